from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class BridgeConfig:
    password: str = ""
    daemon_url: str = "http://localhost:8081"
    daemon_timeout_s: float = 30.0
    attachment_timeout_s: float = 60.0
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origin: str = "*"
    poll_interval_s: float = 1.0
    daemon_events: bool = True
    staging_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "bluebridge-uploads"))
    webhook_urls: tuple[str, ...] = ()
    send_cache_ttl_s: int = 300
    delivered_ttl_s: int = 600
    contacts_cache_ttl_s: int = 60
    ws_ping_interval_s: int = 30
    ws_max_msg_size: int = 16 * 1024 * 1024
    log_level: str = "INFO"
    server_version: str = "1.0.0"
    encrypt_coms: bool = False
    socket_encryption_key: str = ""
    fcm_google_services_path: str = ""
    vcf_path: str = field(default_factory=lambda: os.path.join(os.getcwd(), "data", "AddressBook.vcf"))

    @property
    def polling_enabled(self) -> bool:
        return self.poll_interval_s > 0

    @property
    def encryption_passphrase(self) -> str:
        return self.password or self.socket_encryption_key

    def with_overrides(self, **changes) -> "BridgeConfig":
        """Return a copy with the non-``None`` keyword arguments applied."""

        return replace(self, **{key: value for key, value in changes.items() if value is not None})


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    parsed = _parse_non_negative_float(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be greater than zero")
    return parsed


def _parse_flag(*names: str, default: bool = False) -> bool:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or raw == "":
            continue
        value = raw.strip().lower()
        if value in {"1", "true"}:
            return True
        if value in {"0", "false"}:
            return False
        raise ValueError(f"{name} must be true or false")
    return default


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_csv(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name) or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_config_from_env() -> BridgeConfig:
    defaults = BridgeConfig()
    password = os.environ.get("SERVER_PASSWORD") or os.environ.get("PASSWORD") or ""
    return BridgeConfig(
        password=password.strip(),
        daemon_url=os.environ.get("DAEMON_URL") or defaults.daemon_url,
        daemon_timeout_s=_parse_positive_float("DAEMON_TIMEOUT_S", defaults.daemon_timeout_s),
        attachment_timeout_s=_parse_positive_float(
            "DAEMON_ATTACHMENT_TIMEOUT_S", defaults.attachment_timeout_s
        ),
        host=os.environ.get("BRIDGE_HOST") or defaults.host,
        port=_parse_non_negative_int("BRIDGE_PORT", defaults.port),
        cors_origin=os.environ.get("CORS_ORIGIN") or defaults.cors_origin,
        poll_interval_s=_parse_non_negative_float("POLL_INTERVAL_S", defaults.poll_interval_s),
        daemon_events=_parse_bool01("DAEMON_EVENTS", defaults.daemon_events),
        staging_dir=os.environ.get("ATTACHMENT_STAGING_DIR") or defaults.staging_dir,
        webhook_urls=_parse_csv("WEBHOOK_URLS"),
        send_cache_ttl_s=_parse_non_negative_int("SEND_CACHE_TTL_S", defaults.send_cache_ttl_s),
        delivered_ttl_s=_parse_non_negative_int("DELIVERED_TTL_S", defaults.delivered_ttl_s),
        contacts_cache_ttl_s=_parse_non_negative_int("CONTACTS_CACHE_TTL_S", defaults.contacts_cache_ttl_s),
        ws_ping_interval_s=max(1, _parse_non_negative_int("WS_PING_INTERVAL_S", defaults.ws_ping_interval_s)),
        ws_max_msg_size=_parse_non_negative_int("WS_MAX_MSG_SIZE", defaults.ws_max_msg_size),
        log_level=(os.environ.get("LOG_LEVEL") or defaults.log_level).upper(),
        server_version=os.environ.get("SERVER_VERSION") or defaults.server_version,
        encrypt_coms=_parse_flag("ENCRYPT_COMS", "ENCRYPT_COMMS"),
        socket_encryption_key=os.environ.get("SOCKET_ENCRYPTION_KEY") or "",
        fcm_google_services_path=os.environ.get("FCM_GOOGLE_SERVICES_PATH") or "",
        vcf_path=os.environ.get("VCF_PATH") or defaults.vcf_path,
    )
