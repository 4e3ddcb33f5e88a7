"""Recording URL parsing."""

import re
from typing import TypedDict

# {uuid}-{dd}-{mm}-{yy}-{hh}h{mm}-{from}-{to}.mp3
_RECORDING_FILE = re.compile(
    r"^([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})"
    r"-(\d{2})-(\d{2})-(\d{2})-(\d{2})h(\d{2})-(\d+)-(\d+)\.mp3$",
    re.IGNORECASE,
)


class ParsedRecording(TypedDict):
    uuid: str
    date: str
    time: str
    from_number: str
    to_number: str


def parse_recording_url(url: str | None) -> ParsedRecording | None:
    """Extract date (DD/MM/YYYY), time (HH:MM) and phone numbers from a recording URL."""
    if not url:
        return None
    file_name = url.split("?", 1)[0].rstrip("/").split("/")[-1]
    match = _RECORDING_FILE.match(file_name)
    if not match:
        return None
    uuid, day, month, year, hour, minute, from_number, to_number = match.groups()
    return {
        "uuid": uuid.lower(),
        "date": f"{day}/{month}/20{year}",
        "time": f"{hour}:{minute}",
        "from_number": from_number,
        "to_number": to_number,
    }
