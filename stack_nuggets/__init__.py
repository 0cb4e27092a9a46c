from stack_nuggets import parser as parser
from stack_nuggets.collection import ProfileCollection as ProfileCollection
from stack_nuggets.filter import Filter as Filter, FilterError as FilterError, parse_filter as parse_filter
from stack_nuggets.parser import FileParser as FileParser
from stack_nuggets.settings import Settings as Settings
import logging


def init_logging(level=logging.INFO):
    """
    Configure logging for the stack_nuggets library at INFO level.
    Adds a StreamHandler if none exists.
    """
    logger = logging.getLogger("stack_nuggets")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False
