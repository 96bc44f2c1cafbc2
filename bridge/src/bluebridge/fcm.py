"""Firebase client configuration handed to clients that register for push."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

OAUTH_CLIENT_TYPE = 3


def fallback_google_services() -> Dict[str, Any]:
    return {
        "project_info": {
            "project_number": "0",
            "project_id": "local-bridge",
            "storage_bucket": "",
        },
        "client": [
            {
                "client_info": {
                    "mobilesdk_app_id": "0:0:local-bridge",
                    "android_client_info": {"package_name": "com.bluebubbles.bridge"},
                },
                "api_key": [{"current_key": ""}],
                "oauth_client": [{"client_id": "0", "client_type": OAUTH_CLIENT_TYPE}],
            }
        ],
    }


def _project_number(config: Dict[str, Any], client: Dict[str, Any]) -> str:
    number = (config.get("project_info") or {}).get("project_number")
    if number:
        return str(number)
    app_id = str((client.get("client_info") or {}).get("mobilesdk_app_id") or "")
    parts = app_id.split(":")
    return parts[1] if len(parts) > 1 and parts[1] else "0"


def load_fcm_client_config(path: str | Path | None) -> Dict[str, Any]:
    """Read a google-services.json, falling back to a placeholder when it is unusable.

    Clients require an ``oauth_client`` entry on the first client, so one is
    synthesized from the project number when the file lacks it.
    """

    if not path:
        return fallback_google_services()
    try:
        config = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("failed to read FCM config %s: %s", path, exc)
        return fallback_google_services()
    if not isinstance(config, dict):
        logger.warning("FCM config %s is not a JSON object", path)
        return fallback_google_services()

    clients = config.get("client")
    if isinstance(clients, list) and clients and isinstance(clients[0], dict):
        first = clients[0]
        if not first.get("oauth_client"):
            first["oauth_client"] = [
                {"client_id": _project_number(config, first), "client_type": OAUTH_CLIENT_TYPE}
            ]
    return config
