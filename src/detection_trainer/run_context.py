from __future__ import annotations

import contextvars

# Run-scoped correlation id (experiment name), blank if not set
run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
