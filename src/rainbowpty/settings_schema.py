from rainbowpty.settings import SchemaDict

SCHEMA: list[SchemaDict] = [
    {
        "key": "rainbow",
        "title": "Rainbow",
        "type": "object",
        "fields": [
            {
                "key": "frequency",
                "title": "Frequency",
                "help": "How quickly the colors cycle.",
                "type": "number",
                "default": 0.1,
            },
            {
                "key": "spread",
                "title": "Spread",
                "help": "Columns per step of the gradient; larger values give wider bands.",
                "type": "number",
                "default": 3.0,
            },
            {
                "key": "colors",
                "title": "Color mode",
                "help": "24-bit colors, or the 256 color palette for terminals without true color.",
                "type": "choices",
                "choices": ["truecolor", "256"],
                "default": "truecolor",
            },
        ],
    },
    {
        "key": "parser",
        "title": "Parser",
        "type": "object",
        "fields": [
            {
                "key": "max_sequence",
                "title": "Maximum escape sequence length",
                "help": "Longer sequences are written unmodified, without waiting for a terminator.",
                "type": "integer",
                "default": 4096,
            }
        ],
    },
    {
        "key": "shell",
        "title": "Shell",
        "type": "object",
        "fields": [
            {
                "key": "command",
                "title": "Command",
                "help": "Program to run when no command is given. Empty to use $SHELL.",
                "type": "string",
                "default": "",
            }
        ],
    },
    {
        "key": "logging",
        "title": "Logging",
        "type": "object",
        "fields": [
            {
                "key": "level",
                "title": "Level",
                "type": "choices",
                "choices": ["DEBUG", "INFO", "WARNING", "ERROR"],
                "default": "WARNING",
            }
        ],
    },
]
