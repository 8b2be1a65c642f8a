# src/entity_repository/core/logging/
# ├─ __init__.py            # public API: setup_logging, correlation id helpers
# ├─ builder.py             # make_dict_config(settings) + setup_logging(settings)
# ├─ formatters.py          # JsonFormatter, ColorFormatter
# ├─ filters.py             # CorrelationIdFilter, RedactFilter (+ contextvar helpers)
# └─ handlers.py            # handler config factories (console/file)


from .builder import setup_logging, make_dict_config, stop_queue_logging
from .filters import (
    set_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    correlation_scope,
    CorrelationIdFilter,
)

__all__ = [
    "setup_logging",
    "make_dict_config",
    "stop_queue_logging",
    "set_correlation_id",
    "get_correlation_id",
    "reset_correlation_id",
    "correlation_scope",
    "CorrelationIdFilter",
]
