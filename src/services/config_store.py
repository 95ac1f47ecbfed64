"""
Persisted camera configuration.

Backed by the same ``KEY=VALUE`` file the application settings read. The store
owns the camera options only; any other key in the file is carried through
every rewrite untouched.
"""
import asyncio
import os
from pathlib import Path
from typing import Any, Dict, List, Tuple

import aiofiles
import aiofiles.os
import structlog
from pydantic import ValidationError as PydanticValidationError

from src.models.config import CameraConfig
from src.utils.config import AppSettings
from src.utils.errors import FilesystemError, ValidationError

logger = structlog.get_logger().bind(component="ConfigStore")

# Field name -> persisted key
ENV_KEYS: Dict[str, str] = {
    name: name.upper() for name in CameraConfig.model_fields
}
ENV_KEYS["start_time"] = "SCHEDULE_START_TIME"
ENV_KEYS["stop_time"] = "SCHEDULE_STOP_TIME"

FIELD_BY_ALIAS: Dict[str, str] = {}
for _name, _info in CameraConfig.model_fields.items():
    FIELD_BY_ALIAS[_name] = _name
    FIELD_BY_ALIAS[_info.alias or _name] = _name


def parse_env_content(content: str) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` lines. Blank lines and ``#`` comments are skipped."""
    values: Dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key.strip()] = value
    return values


def serialize_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_env_content(values: Dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in values.items())


class ConfigStore:
    """Typed, validated view over the persisted configuration file."""

    def __init__(self, settings: AppSettings):
        self.path = Path(settings.config_file)
        self.template_path = Path(settings.config_template)
        self._snapshot = CameraConfig()
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> CameraConfig:
        return self._snapshot

    async def initialize(self) -> CameraConfig:
        """Create the file on first start, then load it."""
        if not await aiofiles.os.path.exists(self.path):
            await self._create_file()
        return await self.reload()

    async def reload(self) -> CameraConfig:
        """Re-read the file. Invalid values fall back to their defaults."""
        values = await self._read_file()
        accepted, rejected = self._parse_fields(values)
        for field, error in rejected:
            logger.warning("Invalid persisted value, using default",
                           key=ENV_KEYS[field], value=values.get(ENV_KEYS[field]), error=error)

        self._snapshot = CameraConfig(**accepted)
        logger.info("Configuration loaded", path=str(self.path), fields=len(accepted),
                    rejected=len(rejected))
        return self._snapshot

    async def update(self, changes: Dict[str, Any]) -> CameraConfig:
        """Validate and persist ``changes`` (camelCase or snake_case keys).

        Raises:
            ValidationError: a value is out of range or of the wrong type.
        """
        if not isinstance(changes, dict):
            raise ValidationError("config", "Configuration must be an object")

        updates: Dict[str, Any] = {}
        ignored: List[str] = []
        for key, value in changes.items():
            field = FIELD_BY_ALIAS.get(key)
            if field is None:
                ignored.append(key)
            else:
                updates[field] = value
        if ignored:
            logger.debug("Ignoring unrecognized configuration keys", keys=ignored)

        async with self._lock:
            merged = self._snapshot.model_dump()
            merged.update(updates)
            try:
                config = CameraConfig.model_validate(merged)
            except PydanticValidationError as e:
                first = e.errors()[0]
                field = str(first["loc"][0]) if first.get("loc") else "config"
                raise ValidationError(field, first["msg"], value=first.get("input"))

            values = await self._read_file()
            for field in updates:
                values[ENV_KEYS[field]] = serialize_value(getattr(config, field))
            await self._write_file(values)
            self._snapshot = config

        logger.info("Configuration updated", fields=sorted(updates))
        return self._snapshot

    async def reset_to_defaults(self) -> CameraConfig:
        """Rewrite every recognized key with its default. Other keys are kept."""
        defaults = CameraConfig()
        async with self._lock:
            values = await self._read_file()
            values.update(self._defaults_as_env(defaults))
            await self._write_file(values)
            self._snapshot = defaults
        logger.info("Configuration reset to defaults")
        return self._snapshot

    def legacy_view(self) -> Dict[str, Any]:
        return self._snapshot.legacy_view()

    def extended_view(self) -> Dict[str, Any]:
        return self._snapshot.extended_view()

    # ------------------------------------------------------------------

    @staticmethod
    def _parse_fields(values: Dict[str, str]) -> Tuple[Dict[str, Any], List[Tuple[str, str]]]:
        accepted: Dict[str, Any] = {}
        rejected: List[Tuple[str, str]] = []
        for field, key in ENV_KEYS.items():
            if key not in values:
                continue
            raw = values[key]
            try:
                CameraConfig.model_validate({field: raw})
            except PydanticValidationError as e:
                rejected.append((field, e.errors()[0]["msg"]))
                continue
            accepted[field] = raw
        return accepted, rejected

    @staticmethod
    def _defaults_as_env(defaults: CameraConfig) -> Dict[str, str]:
        return {key: serialize_value(getattr(defaults, field)) for field, key in ENV_KEYS.items()}

    async def _create_file(self) -> None:
        if await aiofiles.os.path.exists(self.template_path):
            async with aiofiles.open(self.template_path, "r", encoding="utf-8") as f:
                content = await f.read()
            source = str(self.template_path)
        else:
            content = "# Time-lapse camera configuration\n" + render_env_content(
                self._defaults_as_env(CameraConfig()))
            source = "defaults"

        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(self.path, "w", encoding="utf-8") as f:
                await f.write(content)
        except OSError as e:
            raise FilesystemError("create", str(self.path), str(e))
        logger.info("Configuration file created", path=str(self.path), source=source)

    async def _read_file(self) -> Dict[str, str]:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                return parse_env_content(await f.read())
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise FilesystemError("read", str(self.path), str(e))

    async def _write_file(self, values: Dict[str, str]) -> None:
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(render_env_content(values))
            os.replace(temp_path, self.path)
        except OSError as e:
            raise FilesystemError("write", str(self.path), str(e))

