"""
UTC timestamp logging formatter.

Prefixes every entry written to the log file with the UTC time the record
was created, in square brackets followed by a space.
"""

import datetime
import logging


class UTCTimestampFormatter(logging.Formatter):
    """
    Logging formatter that adds UTC timestamps in square brackets.

    Format: [YYYY-MM-DD HH:MM:SS.sss UTC] LEVEL: message
    """

    def format(self, record):
        created = datetime.datetime.fromtimestamp(
            record.created, tz=datetime.timezone.utc
        )
        timestamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return f"[{timestamp} UTC] {super().format(record)}"
