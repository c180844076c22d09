"""
Job record shared by the parser, the service and the browser engine.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional

DATE_RE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
TIME_RE = re.compile(r"^\d{2}:\d{2}$")
ZIP_RE = re.compile(r"^\d{5}$")


def z2(value) -> str:
    """Zero-pad a day, month or hour to two digits."""
    return str(int(value)).zfill(2)


@dataclass(frozen=True)
class JobRecord:
    date: str
    time: str
    zip: str
    city: str = ""

    def __post_init__(self) -> None:
        if not DATE_RE.match(self.date or ""):
            raise ValueError(f"JobRecord.date must be DD.MM.YYYY, got {self.date!r}")
        if not TIME_RE.match(self.time or ""):
            raise ValueError(f"JobRecord.time must be HH:MM, got {self.time!r}")
        if not ZIP_RE.match(self.zip or ""):
            raise ValueError(f"JobRecord.zip must be 5 digits, got {self.zip!r}")
        object.__setattr__(self, "city", " ".join((self.city or "").split()))

    @property
    def key(self) -> str:
        return f"{self.date}_{self.time}_{self.zip}"

    def describe(self) -> str:
        text = f"Am {self.date} um {self.time} in {self.zip}"
        return f"{text} {self.city}" if self.city else text

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


# -------- Normalization for details coming from outside (HTTP trigger, scripts) --------


def normalize_time(raw) -> Optional[str]:
    """"10.3 0" / "9.30" / "9:30" / "9" -> "HH:MM"."""
    if raw is None:
        return None
    t = " ".join(str(raw).split())
    # heal digits split by a stray space, e.g. "10.3 0"
    t = re.sub(r"(\d)\s+(?=\d)", r"\1", t)

    m = re.match(r"^(\d{1,2})[.:](\d{2})$", t)
    if m:
        hh, mm = int(m.group(1)), int(m.group(2))
    else:
        m = re.match(r"^(\d{1,2})$", t)
        if not m:
            return None
        hh, mm = int(m.group(1)), 0
    if hh > 23 or mm > 59:
        return None
    return f"{hh:02d}:{mm:02d}"


def normalize_date(raw) -> Optional[str]:
    if raw is None:
        return None
    d = re.sub(r"\s+", "", str(raw))
    m = re.match(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$", d)
    if not m:
        return None
    return f"{z2(m.group(1))}.{z2(m.group(2))}.{m.group(3)}"


def normalize_zip(raw) -> Optional[str]:
    z = str(raw or "").strip()
    return z if ZIP_RE.match(z) else None


def normalize_job_details(details) -> Optional[JobRecord]:
    """
    Turn a JobRecord or a {date, time, zip, city} mapping into a JobRecord.
    Returns None when date, time or zip cannot be normalized; city may be empty.
    """
    if details is None:
        return None
    if isinstance(details, JobRecord):
        return details
    if not isinstance(details, Mapping):
        return None

    date = normalize_date(details.get("date"))
    time = normalize_time(details.get("time"))
    zip_code = normalize_zip(details.get("zip"))
    if not (date and time and zip_code):
        return None
    return JobRecord(date=date, time=time, zip=zip_code, city=str(details.get("city") or ""))
