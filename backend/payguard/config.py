import json
import os
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError

_SERVER_CONFIG: Dict[str, Any] = {}

DEFAULT_CREDIT_PLANS: Dict[str, int] = {"starter": 100, "pro": 500, "business": 2000}


def get_server_secret(key: str, default: Optional[Any] = None) -> Any:
    """Read a server-side secret. Precedence: loaded Mongo config -> environment -> default.
    Do not expose these to clients.
    """
    if key in _SERVER_CONFIG:
        return _SERVER_CONFIG[key]
    return os.getenv(key, default)  # type: ignore[no-any-return]


def require_secret(key: str) -> str:
    """Like get_server_secret but a missing or empty value is a hard error."""
    value = get_server_secret(key)
    if not value:
        raise ConfigurationError(f"{key} is not set")
    return str(value)


def webhook_secret(provider: str) -> bytes:
    return require_secret(f"{provider.upper()}_WEBHOOK_SECRET").encode("utf-8")


def _int_setting(key: str, default: int) -> int:
    raw = get_server_secret(key)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def risk_block_threshold() -> int:
    return _int_setting("RISK_BLOCK_THRESHOLD", 80)


def webhook_tolerance_seconds() -> int:
    return _int_setting("WEBHOOK_TOLERANCE_SECONDS", 300)


def provider_timeout_seconds() -> float:
    return float(_int_setting("PROVIDER_TIMEOUT_SECONDS", 10))


def enabled_providers() -> List[str]:
    raw = get_server_secret("PAYMENT_PROVIDERS") or "sandbox"
    return [p.strip().lower() for p in str(raw).split(",") if p.strip()]


def admin_user_ids() -> List[str]:
    """Operators allowed to read webhook logs and cross-user reports. Comma list (env) or list (Mongo)."""
    raw = get_server_secret("ADMIN_USER_IDS") or ""
    items = raw if isinstance(raw, list) else str(raw).split(",")
    return [str(i).strip() for i in items if str(i).strip()]


def credit_plans() -> Dict[str, int]:
    """Plan id -> credits granted. CREDIT_PLANS may hold a JSON object (env) or a dict (Mongo)."""
    raw = get_server_secret("CREDIT_PLANS")
    if not raw:
        return dict(DEFAULT_CREDIT_PLANS)
    if isinstance(raw, dict):
        plans = raw
    else:
        try:
            plans = json.loads(raw)
        except ValueError:
            raise ConfigurationError("CREDIT_PLANS is not valid JSON")
        if not isinstance(plans, dict):
            raise ConfigurationError("CREDIT_PLANS must be a JSON object")
    return {str(k): int(v) for k, v in plans.items()}


# Credentials each provider needs besides its webhook secret
_PROVIDER_CREDENTIALS: Dict[str, List[str]] = {
    "stripe": ["STRIPE_SECRET_KEY"],
    "cashfree": ["CASHFREE_APP_ID", "CASHFREE_SECRET_KEY"],
    "sandbox": [],
}


def check_provider_secrets(providers: Optional[List[str]] = None) -> None:
    """Fail fast when an enabled provider is missing its webhook secret or API credentials."""
    missing: List[str] = []
    for provider in providers if providers is not None else enabled_providers():
        keys = [f"{provider.upper()}_WEBHOOK_SECRET", *_PROVIDER_CREDENTIALS.get(provider, [])]
        missing.extend(k for k in keys if not get_server_secret(k))
    if missing:
        raise ConfigurationError("missing payment secrets: " + ", ".join(missing))


def _allowlisted_public_from_env() -> Dict[str, Any]:
    """Expose only safe, intentionally public values from env.
    Keys beginning with PUBLIC_ are considered safe to ship to clients.
    """
    out: Dict[str, Any] = {}
    for k, v in os.environ.items():
        if k.startswith("PUBLIC_"):
            out[k] = v
    return out


async def load_server_config_from_mongo(mdb) -> None:
    """Load server config from MongoDB into memory if available.
    The expected document shape (collection: config, id: 'runtime'):
      { _id: 'runtime', server: { KEY: VALUE, ... }, public: { PUBLIC_*: VALUE, ... } }
    """
    if mdb is None:
        return
    coll = mdb.get_collection("config")
    doc = await coll.find_one({"_id": "runtime"})
    if not doc:
        return
    server = doc.get("server") or {}
    if isinstance(server, dict):
        # Merge into memory; prefer Mongo values
        _SERVER_CONFIG.update(server)


async def get_public_config(mdb) -> Dict[str, Any]:
    """Return public configuration for clients: enabled providers, plan catalog,
    the Mongo 'public' map and PUBLIC_* envs."""
    public: Dict[str, Any] = {
        "providers": enabled_providers(),
        "plans": credit_plans(),
    }
    if mdb is not None:
        coll = mdb.get_collection("config")
        doc = await coll.find_one({"_id": "runtime"})
        if doc and isinstance(doc.get("public"), dict):
            public.update(doc["public"])  # type: ignore[index]
    # Env wins as an override
    public.update(_allowlisted_public_from_env())
    return public
