#!/usr/bin/env python3
#
# This module contains utility functions for logging.

import logging
import sys


def get_logger(name: str) -> logging.Logger:
    """
    Get a module-scoped logger which logs to stdout. This function must always
    be invoked as follows:

    get_logger(__name__)

    Calling it twice for the same name returns the same logger without
    attaching a second handler.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not any(getattr(h, "_trustboot", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            "%(asctime)s.%(msecs)03d %(levelname)s %(filename)s:%(lineno)d %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        handler.setFormatter(formatter)
        setattr(handler, "_trustboot", True)
        logger.addHandler(handler)
    return logger
