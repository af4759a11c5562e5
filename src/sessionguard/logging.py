"""
Structured logging setup using structlog.

Security events double as audit entries: they go out on the ``sessionguard.audit``
logger with ``audit_*`` keys so log shippers can route them separately.
"""

import logging

import structlog

from sessionguard.settings import ObservabilitySettings, get_settings

AUDIT_LOGGER_NAME = "sessionguard.audit"


def setup_logging(observability: ObservabilitySettings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        observability: Logging options, defaults to the global settings
    """
    observability = observability or get_settings().observability
    logging.basicConfig(format="%(message)s", level=observability.log_level.value)

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_audit_logger() -> structlog.BoundLogger:
    """Logger for audit entries."""
    return structlog.get_logger(AUDIT_LOGGER_NAME)


def log_audit_event(
    action: str,
    category: str,
    subject_id: str | None = None,
    tenant_id: str | None = None,
    session_id: str | None = None,
    ip_address: str | None = None,
    severity: str = "low",
    **details,
) -> None:
    """
    Emit one audit entry.

    Args:
        action: What happened (a security event type value)
        category: Coarse grouping such as ``authentication`` or ``threat``
        severity: Severity value; high and critical entries log at warning level
    """
    audit_logger = get_audit_logger()
    log = audit_logger.warning if severity in ("high", "critical") else audit_logger.info
    log(
        action,
        audit_category=category,
        audit_subject_id=subject_id,
        audit_tenant_id=tenant_id,
        audit_session_id=session_id,
        audit_ip_address=ip_address,
        audit_severity=severity,
        **details,
    )
