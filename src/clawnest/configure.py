"""Gateway configuration generation.

generate_config() is a pure mapping from caller settings to the agent's
openclaw.json document. deep_merge() is right-biased and only recurses into
keys that hold mappings on both sides; lists and scalars are replaced.
"""

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from clawnest.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "openclaw.json"
DEFAULT_INSTANCE_ID = "default"
MAX_INSTANCE_ID_LENGTH = 32

_INSTANCE_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


class ModelEntry(BaseModel):
    id: str
    name: str
    api: str = "anthropic-messages"

    model_config = {"frozen": True}


# First entry is the fallback for unknown model ids
MODEL_CATALOG: tuple[ModelEntry, ...] = (
    ModelEntry(id="claude-opus-4-6", name="Claude Opus 4.6"),
    ModelEntry(id="claude-opus-4-5-20251101", name="Claude Opus 4.5"),
    ModelEntry(id="claude-sonnet-4-5-20250929", name="Claude Sonnet 4.5"),
    ModelEntry(id="claude-haiku-4-5-20251001", name="Claude Haiku 4.5"),
    ModelEntry(id="claude-opus-4-1-20250805", name="Claude Opus 4.1"),
    ModelEntry(id="claude-sonnet-4-20250514", name="Claude Sonnet 4"),
)

PROVIDER_BASE_URL = "https://direct.evolink.ai"

TELEGRAM = "telegram"
FEISHU = "feishu"
CHANNELS = (TELEGRAM, FEISHU)


class InstanceSettings(BaseModel):
    """Caller-supplied settings for create and deploy_stream."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(default="", alias="apiKey")
    model_id: str | None = Field(default=None, alias="modelId")
    channel: str | None = None
    bot_token: str | None = Field(default=None, alias="botToken")
    app_id: str | None = Field(default=None, alias="appId")
    app_secret: str | None = Field(default=None, alias="appSecret")
    port: int | None = None

    def channel_credentials(self) -> dict[str, str]:
        if self.channel == TELEGRAM:
            return {"botToken": self.bot_token or ""}
        if self.channel == FEISHU:
            return {"appId": self.app_id or "", "appSecret": self.app_secret or ""}
        return {}


def validate_instance_id(instance_id: str) -> None:
    """Raise InvalidArgumentError unless the id is usable as a directory name."""
    if instance_id == DEFAULT_INSTANCE_ID:
        return
    if not instance_id:
        raise InvalidArgumentError("Instance name is required")
    if len(instance_id) > MAX_INSTANCE_ID_LENGTH:
        raise InvalidArgumentError(
            f"Instance name too long (max {MAX_INSTANCE_ID_LENGTH} characters)"
        )
    if not _INSTANCE_ID_RE.fullmatch(instance_id):
        raise InvalidArgumentError(
            "Instance name can only contain letters, numbers, hyphens and underscores"
        )


def validate_channel(channel: str | None) -> None:
    if channel is not None and channel not in CHANNELS:
        raise InvalidArgumentError(
            f"Unsupported channel {channel!r} (expected one of: {', '.join(CHANNELS)})"
        )


def validate_port(port: int) -> None:
    if not 1 <= port <= 65535:
        raise InvalidArgumentError(f"Port out of range: {port}")


def find_model(model_id: str | None) -> ModelEntry:
    for entry in MODEL_CATALOG:
        if entry.id == model_id:
            return entry
    return MODEL_CATALOG[0]


def _channel_document(channel: str | None, creds: Mapping[str, str]) -> dict[str, Any]:
    if channel == TELEGRAM:
        return {
            TELEGRAM: {
                "enabled": True,
                "botToken": creds.get("botToken", ""),
                "dmPolicy": "pairing",
                "groups": {"*": {"requireMention": True}},
            }
        }
    if channel == FEISHU:
        return {
            FEISHU: {
                "enabled": True,
                "dmPolicy": "pairing",
                "groupPolicy": "open",
                "requireMention": True,
                "accounts": {
                    "main": {
                        "appId": creds.get("appId", ""),
                        "appSecret": creds.get("appSecret", ""),
                    }
                },
            }
        }
    return {}


def generate_config(
    api_key: str,
    model_id: str | None,
    channel: str | None,
    channel_credentials: Mapping[str, str],
    port: int,
    bind: str = "loopback",
) -> dict[str, Any]:
    """Build the gateway configuration document.

    Unknown model ids fall back to the first catalog entry. Each channel
    contributes its own sub-document under "channels" and a plugin entry.
    """
    model = find_model(model_id)
    config: dict[str, Any] = {
        "models": {
            "providers": {
                "anthropic": {
                    "api": model.api,
                    "baseUrl": PROVIDER_BASE_URL,
                    "apiKey": api_key,
                    "models": [
                        {
                            "id": model.id,
                            "name": model.name,
                            "reasoning": False,
                            "input": ["text"],
                            "cost": {"input": 0, "output": 0, "cacheRead": 0, "cacheWrite": 0},
                            "contextWindow": 200000,
                            "maxTokens": 8192,
                        }
                    ],
                }
            }
        },
        "agents": {"defaults": {"model": {"primary": f"anthropic/{model.id}"}}},
        "gateway": {"port": port, "bind": bind, "mode": "local"},
    }

    channels = _channel_document(channel, channel_credentials)
    if channels:
        config["channels"] = channels
        config["plugins"] = {"entries": {channel: {"enabled": True}}}

    return config


def deep_merge(target: Mapping[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    """Right-biased recursive merge returning a new document.

    Recurses only where both sides hold a mapping; any other source value
    (list, scalar, None) replaces the target value wholesale.
    """
    result = dict(target)
    for key, value in source.items():
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


def read_instance_config(directory: Path) -> dict[str, Any] | None:
    """Read openclaw.json, or None when missing or unparsable."""
    path = Path(directory) / CONFIG_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Unreadable gateway config %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def write_instance_config(directory: Path, config: Mapping[str, Any]) -> Path:
    """Merge config onto the existing openclaw.json and write it back."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / CONFIG_FILENAME
    merged = deep_merge(read_instance_config(directory) or {}, config)
    path.write_text(json.dumps(merged, indent=2), encoding="utf-8")
    return path


def allow_channel_user(config: Mapping[str, Any], channel: str, user_id: str) -> dict[str, Any]:
    """Switch a channel to allowlist DMs and add user_id to allowFrom."""
    validate_channel(channel)
    channels = dict(config.get("channels") or {})
    section = dict(channels.get(channel) or {})
    section["dmPolicy"] = "allowlist"
    allowed = [str(x) for x in section.get("allowFrom") or []]
    if str(user_id) not in allowed:
        allowed.append(str(user_id))
    section["allowFrom"] = allowed
    channels[channel] = section
    result = dict(config)
    result["channels"] = channels
    return result


async def check_port(port: int, host: str = "127.0.0.1", timeout: float = 0.8) -> bool:
    """True if a TCP connection to host:port succeeds within the timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
