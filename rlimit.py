"""Best-effort tuning of the process open-file limit."""

from __future__ import annotations

import logging
import sys

LOGGER = logging.getLogger(__name__)


def raise_open_file_limit(limit: int) -> int | None:
    """Raise the soft RLIMIT_NOFILE to at least ``limit``.

    Returns the resulting soft limit, or None when it could not be read or
    raised. Never raises: every input file can still be delivered with a
    lower limit as long as the files are not all open at once.
    """
    if sys.platform == "win32":
        LOGGER.debug("Open file limit not adjustable on this platform")
        return None

    import resource  # noqa: PLC0415 - POSIX only

    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError) as exc:
        LOGGER.warning("getrlimit() failed to get open file limit: %s", exc)
        return None

    if soft != resource.RLIM_INFINITY and soft < limit:
        LOGGER.debug("Setting open file limit to %s", limit)
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (limit, hard))
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "setrlimit failed to raise open file limit from %s to %s (max: %s): %s",
                soft,
                limit,
                hard,
                exc,
            )
            return None
        return limit

    return soft
