"""Logging filter that stamps records with the current request id.

Attach ``RequestIdFilter`` to a handler (see ``LOGGING`` in
``config.settings``) so the JSON formatter can always reference
``%(request_id)s``, including in records emitted outside a request such as
management commands, where the placeholder "-" is used.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
