# apps/utils/logging.py
import logging
import json
import re

MASK = "***MASKED***"
MAX_SCRUB_DEPTH = 10


class CorrelationIdFilter(logging.Filter):
    """
    Stamps every record with the current request id so web and worker
    logs for one webhook delivery can be joined.
    """

    def filter(self, record):
        from apps.core.middleware import get_correlation_id

        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or "N/A"
        return True


class MaskingJsonFormatter(logging.Formatter):
    """
    One JSON object per record, for the log aggregator.

    Webhook bodies carry signatures, customer emails and phone numbers.
    Keys in SENSITIVE_KEYS are masked inside `extra={"metadata": ...}`;
    the text patterns then catch the same values anywhere in the output,
    message included.
    """

    SENSITIVE_KEYS = frozenset({
        "password", "token", "secret", "key", "authorization",
        "signature", "razorpay_signature", "x-razorpay-signature",
    })

    TEXT_PATTERNS = (
        (re.compile(r'"(password|token|signature|razorpay_signature)":\s*"[^"]*"'), rf'"\1": "{MASK}"'),
        (re.compile(r'"phone":\s*"\+?(\d{2,4})\d{6,}"'), r'"phone": "\1******"'),
        (re.compile(r'"email":\s*"([^"@]{0,2})[^"@]*@([^"]*)"'), r'"email": "\1***@\2"'),
    )

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "N/A"),
            "source": f"{record.pathname}:{record.lineno}",
        }

        metadata = getattr(record, "metadata", None)
        if isinstance(metadata, dict):
            entry["metadata"] = self._scrub(metadata)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        output = json.dumps(entry, default=str)
        for pattern, replacement in self.TEXT_PATTERNS:
            output = pattern.sub(replacement, output)
        return output

    def _scrub(self, value, depth=0):
        if depth > MAX_SCRUB_DEPTH:
            return "[MAX_DEPTH_EXCEEDED]"

        if isinstance(value, dict):
            scrubbed = {}
            for key, item in value.items():
                if str(key).lower() in self.SENSITIVE_KEYS and isinstance(item, (str, int)):
                    scrubbed[key] = MASK
                else:
                    scrubbed[key] = self._scrub(item, depth + 1)
            return scrubbed
        if isinstance(value, (list, tuple)):
            return [self._scrub(item, depth + 1) for item in value]
        return value
