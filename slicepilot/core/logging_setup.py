from __future__ import annotations

"""Logger configuration for the command-line entry point.

Library modules only create module-level loggers; handlers are attached
here, once per CLI invocation.
"""

import logging

__all__ = ["setup_logging"]


def setup_logging(verbose: bool = False) -> None:
    """Initialise the root logger and quieten chatty third-party libraries.

    Args:
        verbose: When True, emit DEBUG messages to stderr; otherwise INFO and up.
    """
    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    # force=True replaces handlers left over from an earlier invocation.
    logging.basicConfig(level=logging.DEBUG, handlers=[console], force=True)

    for name in ("urllib3", "PIL", "pydicom"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
