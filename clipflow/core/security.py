import hashlib
import hmac
import json
import logging

from fastapi import Depends, Header, HTTPException, status

from clipflow.core.auth import MachineCredentialRecord, Principal, PrincipalType
from clipflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Local modules accepted only when CLIPFLOW_ENVIRONMENT=dev and no credentials are configured.
DEV_MACHINE_KEYS: dict[str, tuple[str, list[str]]] = {
    "local-ingest": ("local-ingest-key", ["events:write"]),
    "local-provider": ("local-provider-key", ["callbacks:write"]),
    "local-sweeper": ("local-sweeper-key", ["jobs:sweep"]),
    "local-operator": ("local-operator-key", ["jobs:read", "rate_limits:write"]),
}


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def load_machine_credentials(settings: Settings) -> dict[str, MachineCredentialRecord]:
    if not settings.machine_credentials_json:
        if settings.environment != "dev":
            return {}
        return {
            module_id: MachineCredentialRecord(module_id=module_id, key_hash=hash_api_key(key), scopes=scopes)
            for module_id, (key, scopes) in DEV_MACHINE_KEYS.items()
        }

    try:
        decoded = json.loads(settings.machine_credentials_json)
    except json.JSONDecodeError:
        logger.error("machine_credentials_json is not valid JSON; machine auth disabled")
        return {}
    if not isinstance(decoded, dict):
        return {}

    records: dict[str, MachineCredentialRecord] = {}
    for module_id, raw in decoded.items():
        if not isinstance(module_id, str) or not isinstance(raw, dict):
            continue
        key_hash = raw.get("key_sha256")
        scopes = raw.get("scopes")
        if not isinstance(key_hash, str) or not isinstance(scopes, list):
            continue
        records[module_id] = MachineCredentialRecord(
            module_id=module_id,
            key_hash=key_hash.lower(),
            scopes=[scope for scope in scopes if isinstance(scope, str)],
        )
    return records


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    record = load_machine_credentials(settings).get(x_module_id)
    if record is None or not hmac.compare_digest(record.key_hash, hash_api_key(x_api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=record.module_id,
        scopes=set(record.scopes),
    )


def require_scopes(principal: Principal, required: set[str]) -> None:
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
