from .audit import AuditLogger
from .logger import get_logger, log_security_event

__all__ = ["AuditLogger", "get_logger", "log_security_event"]
