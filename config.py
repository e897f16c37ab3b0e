"""Simple JSON-based config store."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "api_key": "",
    "secret_key": "",
    "dashscope_api_key": "",
    "sample_rate": 16000,
    "auto_stop_s": 8.0,
    "request_timeout_s": 15.0,
    "token_ttl_margin_s": 300.0,
    "dev_pid": 1537,
}

ENV_FALLBACKS = {
    "api_key": "BAIDU_API_KEY",
    "secret_key": "BAIDU_SECRET_KEY",
    "dashscope_api_key": "DASHSCOPE_API_KEY",
}


@dataclass
class VoiceSettings:
    api_key: str
    secret_key: str
    dashscope_api_key: str
    sample_rate: int
    auto_stop_s: Optional[float]
    request_timeout_s: float
    token_ttl_margin_s: float
    dev_pid: int


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "voice_input" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self) -> str:
        return self._get_secret("api_key")

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_secret_key(self) -> str:
        return self._get_secret("secret_key")

    def set_secret_key(self, key: str) -> None:
        self._set("secret_key", key)

    def get_dashscope_api_key(self) -> str:
        return self._get_secret("dashscope_api_key")

    def set_dashscope_api_key(self, key: str) -> None:
        self._set("dashscope_api_key", key)

    def get_auto_stop_s(self) -> Optional[float]:
        value = self._read_all().get("auto_stop_s", DEFAULTS["auto_stop_s"])
        if value is None or value == 0:
            return None
        return self._as_float("auto_stop_s", value)

    def set_auto_stop_s(self, seconds: Optional[float]) -> None:
        self._set("auto_stop_s", seconds)

    def load_settings(self) -> VoiceSettings:
        data = self._read_all()
        return VoiceSettings(
            api_key=self.get_api_key(),
            secret_key=self.get_secret_key(),
            dashscope_api_key=self.get_dashscope_api_key(),
            sample_rate=int(self._as_float("sample_rate", data.get("sample_rate", DEFAULTS["sample_rate"]))),
            auto_stop_s=self.get_auto_stop_s(),
            request_timeout_s=self._as_float(
                "request_timeout_s", data.get("request_timeout_s", DEFAULTS["request_timeout_s"])
            ),
            token_ttl_margin_s=self._as_float(
                "token_ttl_margin_s", data.get("token_ttl_margin_s", DEFAULTS["token_ttl_margin_s"])
            ),
            dev_pid=int(self._as_float("dev_pid", data.get("dev_pid", DEFAULTS["dev_pid"]))),
        )

    def _get_secret(self, key: str) -> str:
        value = str(self._read_all().get(key, "") or "")
        if value:
            return value
        return os.getenv(ENV_FALLBACKS[key], "")

    def _as_float(self, key: str, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for %s in %s: %r, using default", key, self._path, value)
            return float(DEFAULTS[key])

    def _set(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
