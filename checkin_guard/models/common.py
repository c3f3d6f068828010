# checkin_guard/models/common.py
from datetime import datetime
from typing import Annotated, Literal

from pydantic import AfterValidator

from checkin_guard.utils.expiry import ensure_utc

# The store hands back naive UTC datetimes; normalise on the way in.
UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]

Severity = Literal["low", "medium", "high", "critical"]
