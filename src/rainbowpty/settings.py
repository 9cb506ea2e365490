from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Sequence, TypedDict, Required

from rainbowpty._loop import loop_last

log = logging.getLogger("rainbowpty")


class SchemaDict(TypedDict, total=False):
    """Typing for schema data structure."""

    key: Required[str]
    title: Required[str]
    type: Required[str]
    help: str
    default: object
    fields: list[SchemaDict]
    choices: list[str]


type SettingsType = dict[str, object]


INPUT_TYPES = {"boolean", "integer", "number", "string", "choices"}


class SettingsError(Exception):
    """Base class for settings related errors."""


class InvalidKey(SettingsError):
    """The key is not in the schema."""


class InvalidValue(SettingsError):
    """The value was not of the expected type."""


def parse_key(key: str) -> Sequence[str]:
    return key.split(".")


def get_setting[ExpectType](
    settings: dict[str, object], key: str, expect_type: type[ExpectType] = object
) -> ExpectType:
    """Get a key from a settings structure.

    Args:
        settings: A settings dictionary.
        key: A dot delimited key, e.g. "rainbow.spread"
        expect_type: The expected type of the value.

    Raises:
        InvalidValue: If the value is not the expected type.
        KeyError: If the key doesn't exist in settings.

    Returns:
        The value matching they key.
    """
    for last, key_component in loop_last(parse_key(key)):
        if last:
            result = settings[key_component]
            if (
                expect_type is float
                and isinstance(result, int)
                and not isinstance(result, bool)
            ):
                result = float(result)
            if not isinstance(result, expect_type):
                raise InvalidValue(
                    f"Expected {expect_type.__name__} type for {key!r}; found {result!r}"
                )
            return result
        else:
            sub_settings = settings[key_component]
            if not isinstance(sub_settings, dict):
                raise InvalidValue(f"Expected object for {key_component!r}")
            settings = sub_settings
    raise KeyError(key)


class Schema:
    def __init__(self, schema: list[SchemaDict]) -> None:
        self.schema = schema

    def get_schema(self, key: str) -> SchemaDict:
        """Get the schema for a dot delimited key.

        Raises:
            InvalidKey: If the key is not in the schema.
        """
        fields = self.schema
        for last, key_component in loop_last(parse_key(key)):
            for sub_schema in fields:
                if sub_schema["key"] == key_component:
                    break
            else:
                raise InvalidKey(key)
            if last:
                return sub_schema
            fields = sub_schema.get("fields", [])
        raise InvalidKey(key)

    def build_default(self) -> dict[str, object]:
        settings: dict[str, object] = {}

        def set_defaults(schema: list[SchemaDict], settings: dict[str, object]) -> None:
            for sub_schema in schema:
                key = sub_schema["key"]
                type = sub_schema["type"]
                if type in INPUT_TYPES:
                    if (default := sub_schema.get("default")) is not None:
                        settings[key] = default

                elif type == "object":
                    if fields := sub_schema.get("fields"):
                        sub_settings: SettingsType = {}
                        settings[key] = sub_settings
                        set_defaults(fields, sub_settings)

        set_defaults(self.schema, settings)
        return settings


class Settings:
    """Stores schema backed settings."""

    def __init__(self, schema: Schema, settings: dict[str, object]) -> None:
        self._schema = schema
        self._settings = settings

    def get[ExpectType](
        self, key: str, expect_type: type[ExpectType] = object
    ) -> ExpectType:
        from os.path import expandvars

        schema = self._schema.get_schema(key)
        try:
            setting = get_setting(self._settings, key, expect_type=expect_type)
        except KeyError:
            # Missing from the file; fall back to the schema default
            setting = get_setting(
                self._schema.build_default(), key, expect_type=expect_type
            )
        if isinstance(setting, str):
            setting = expandvars(setting)
        if (choices := schema.get("choices")) and setting not in choices:
            raise InvalidValue(
                f"Expected one of {', '.join(choices)} for {key!r}; found {setting!r}"
            )
        return setting


def load_settings(schema: Schema, settings_path: Path) -> Settings:
    """Load settings from a JSON file, writing the defaults if it doesn't exist.

    Args:
        schema: Settings schema.
        settings_path: Path to settings.json.

    Raises:
        SettingsError: If the file could not be read.

    Returns:
        Settings instance.
    """
    if settings_path.exists():
        try:
            settings = json.loads(settings_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SettingsError(f"Unable to read {settings_path}; {error}")
        if not isinstance(settings, dict):
            raise SettingsError(f"Expected an object in {settings_path}")
    else:
        settings = schema.build_default()
        try:
            settings_path.write_text(json.dumps(settings, indent=4), "utf-8")
        except OSError as error:
            log.warning("unable to write default settings; %s", error)
        else:
            log.info("wrote default settings to %s", settings_path)
    return Settings(schema, settings)
