from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from healthwatch.config import HealthwatchConfig


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_config(req: Request) -> HealthwatchConfig:
    config: Any = getattr(req.app.state, "config", None)
    if not isinstance(config, HealthwatchConfig):
        raise RuntimeError("Healthwatch config not set on app state")
    return config


def require_cron_secret(req: Request, config: HealthwatchConfig = Depends(get_config)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not config.cron_secret:
        raise HTTPException(status_code=503, detail="cron_secret_not_configured")
    if not hmac.compare_digest(token.strip(), config.cron_secret.strip()):
        raise HTTPException(status_code=403, detail="invalid_cron_secret")
