import logging


def get_logger(name: str = "ptq-calib"):
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    return logging.getLogger(name)
