from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Bound by the request-handling layer once a caller is authenticated
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
principal_id_var: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

SECURITY_AUDIT_LOGGER = "security_audit"

# Identifiers that name a record without granting access to it
_IDENTIFIER_KEYS = frozenset(
    {
        "token_id",
        "token_type",
        "old_token_id",
        "new_token_id",
        "replaces_token_id",
        "replaced_by_token_id",
        "token_hash",
    }
)
_MASKED_KEYS = ("password", "secret", "authorization", "email", "backup_code", "mfa_code")
_FINGERPRINTED_KEYS = ("token",)
_ADDRESS_KEYS = frozenset({"ip_address", "observed_ip", "stored_ip"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(
    *,
    correlation_id: Optional[str] = None,
    principal_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> str:
    """Attach request identity to every log line emitted in this context."""
    cid = set_correlation_id(correlation_id)
    principal_id_var.set(principal_id)
    tenant_id_var.set(tenant_id)
    return cid


def clear_request_context() -> None:
    correlation_id_var.set(None)
    principal_id_var.set(None)
    tenant_id_var.set(None)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    # Explicit keyword context wins over the ambient request identity
    principal_id = principal_id_var.get()
    if principal_id and "principal_id" not in event_dict:
        event_dict["principal_id"] = principal_id
    tenant_id = tenant_id_var.get()
    if tenant_id and "tenant_id" not in event_dict:
        event_dict["tenant_id"] = tenant_id
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _fingerprint(value: str) -> str:
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()[:12]


def _mask_address(value: str) -> str:
    if "." in value:
        head, _, _ = value.rpartition(".")
        return f"{head}.x"
    if ":" in value:
        head, _, _ = value.rpartition(":")
        return f"{head}:x"
    return _mask(value)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential material before it reaches a sink.

    Raw tokens are replaced by a short digest so two log lines about the
    same token can still be correlated. Client addresses keep their network
    prefix only.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in _IDENTIFIER_KEYS:
            continue
        if lower_key in _ADDRESS_KEYS:
            event_dict[key] = _mask_address(value)
        elif any(marker in lower_key for marker in _MASKED_KEYS):
            event_dict[key] = _mask(value)
        elif any(marker in lower_key for marker in _FINGERPRINTED_KEYS):
            event_dict[key] = _fingerprint(value)
    return event_dict


def _tag_audit_channel(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    if event_dict.pop("audit", False):
        event_dict["channel"] = SECURITY_AUDIT_LOGGER
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_context,
        _tag_audit_channel,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def get_security_audit_logger() -> structlog.stdlib.BoundLogger:
    """Logger reserved for security-audit events.

    Entries carry ``channel="security_audit"`` so audit tooling can route
    them without parsing ordinary failed-auth noise.
    """
    return structlog.get_logger(SECURITY_AUDIT_LOGGER).bind(audit=True)
