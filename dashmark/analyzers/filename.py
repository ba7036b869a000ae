"""Start-time analyzer: reads the recording start from a dashcam filename.

Dashcams name clips ``YYYY-MM-DD_HH-MM-SS[-extra][_more].ext``; the date and
time in the name are the local wall-clock instant of the clip's first frame.
"""

import logging
from datetime import datetime
from typing import Callable

from dashmark.errors import TimestampParseError
from dashmark.models import strip_extension

LOG = logging.getLogger(__name__)


def parse_filename_timestamp(filename: str) -> datetime:
    """Return the local instant encoded in *filename*.

    Raises TimestampParseError when the name is not shaped like
    ``<date>_<HH-MM-SS...>`` or the fields do not form a valid date/time.
    """
    parts = strip_extension(filename).split("_")
    if len(parts) < 2:
        raise TimestampParseError("Filename format is incorrect")

    date_part = parts[0]
    time_parts = parts[1].split("-")
    if len(time_parts) < 3:
        raise TimestampParseError("Time format in filename is incorrect")

    date_str = f"{date_part} {time_parts[0]}:{time_parts[1]}:{time_parts[2]}"
    try:
        return datetime.strptime(date_str, "%Y-%m-%d %H:%M:%S")
    except ValueError as e:
        raise TimestampParseError(
            "Could not parse time information from filename"
        ) from e


def resolve_time_origin(
    filename: str,
    now: Callable[[], datetime] = datetime.now,
    on_warning: Callable[[TimestampParseError], None] | None = None,
) -> tuple[datetime, bool]:
    """Return ``(origin, degraded)``.

    A name without a usable timestamp falls back to the current time; the
    parse failure is logged and handed to *on_warning* but never raised.
    """
    try:
        return parse_filename_timestamp(filename), False
    except TimestampParseError as e:
        LOG.warning("%s (%s); using current time", e, filename)
        if on_warning:
            on_warning(e)
        return now(), True
