import logging
import sys

def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # request lines drown out the recompute job logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # croniter is chatty at DEBUG
    logging.getLogger("croniter").setLevel(logging.WARNING)
