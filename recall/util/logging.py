"""
Structured logging for the retrieval and completion pipeline.
Every log line goes through one named logger so operators can filter on it.
"""

import logging
from typing import Any, Dict, List

class StructuredLogger:
    """Structured logger for pipeline stages, searches and memory writes."""

    def __init__(self, name: str = "recall"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_pipeline_stage(self, stage: str, status: str, user_id: str = None, details: Dict[str, Any] = None):
        """Log the outcome of one completion pipeline stage."""
        log_details = {}
        if user_id is not None:
            log_details["user_id"] = user_id
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("skipped", "failed") else logging.INFO
        self.log_operation(f"pipeline.{stage}", status, log_details, level=level)

    def log_search(self, user_id: str, method: str, result_count: int, execution_time_ms: int, details: Dict[str, Any] = None):
        """Log a completed similarity search."""
        log_details = {
            "user_id": user_id,
            "method": method,
            "result_count": result_count,
            "execution_time_ms": execution_time_ms
        }
        if details:
            log_details.update(details)

        self.log_operation("search", "success", log_details)

    def log_memory_operation(self, operation: str, memory_id: str, user_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a memory write (create, update, delete, embed)."""
        log_details = {"memory_id": memory_id, "user_id": user_id}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation(f"memory.{operation}", status, log_details, level=level)

    def log_extraction(self, user_id: str, parsed: int, saved: int, duplicates: int, rejected: int, failed: int):
        """Log the summary of one memory extraction pass."""
        log_details = {
            "user_id": user_id,
            "parsed": parsed,
            "saved": saved,
            "duplicates": duplicates,
            "rejected": rejected,
            "failed": failed
        }
        status = "failed" if failed and not saved else "success"
        self.log_operation("extraction", status, log_details)

    def log_provider_call(self, provider: str, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a call to an external embedding or generation provider."""
        log_details = {"provider": provider}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "failed" else logging.DEBUG
        self.log_operation(f"provider.{operation}", status, log_details, level=level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

# Global logger instance
logger = StructuredLogger()

# Payload sanitization utility
def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'secret', 'password', 'api_key', 'authorization']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
