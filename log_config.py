import logging


def setup_logger(level="INFO", filename=None):
    kwargs = {}
    if filename:
        kwargs["filename"] = filename
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        **kwargs
    )
    return logging.getLogger("neurogrid")
