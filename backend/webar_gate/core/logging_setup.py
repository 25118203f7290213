import logging

from webar_gate.core.config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once; later calls are no-ops."""
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
