import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the root logger (idempotent)."""
    root = logging.getLogger()
    if not any(getattr(h, "_objectstore", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._objectstore = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())
