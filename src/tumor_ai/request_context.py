from __future__ import annotations

from contextvars import ContextVar

# Correlation id for the classification request being served; blank outside a request
request_id_var: ContextVar[str] = ContextVar("tumor_ai_request_id", default="")
