import logging


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
    )
    # requests' connection pool is chatty at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
