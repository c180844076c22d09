"""
Subject-line parser for job notification emails.

Canonical subject:
    "2 Umzugshelfer am 23.08.2025 ab 15:00 Uhr in 58452 Witten gesucht"

Variants seen in the wild drop the year ("am 23.08."), use German decimal
times ("um 9.30") or bare hours ("ab 9 Uhr"). Anything that does not yield a
date, a time and a zip+city is not a job notification and parses to None.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional, Tuple

from core.models import JobRecord, z2

log = logging.getLogger("core.subject_parser")

NON_JOB_RE = re.compile(r"registrierung|registration|verify|best[äa]tig", re.IGNORECASE)

DATE_WITH_YEAR_RE = re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b")
DATE_NO_YEAR_RE = re.compile(r"\b(\d{1,2})\.(\d{1,2})\.?\b")

# Ordered: the first rule that yields a valid HH:MM wins.
TIME_RULES = [
    ("anchored_colon", re.compile(r"\b(?:um|ab)\s+(\d{1,2}):(\d{2})\b", re.IGNORECASE)),
    ("anchored_dot", re.compile(r"\b(?:um|ab)\s+(\d{1,2})\.(\d{2})(?!\.)\b", re.IGNORECASE)),
    ("anchored_hour", re.compile(r"\b(?:um|ab)\s+(\d{1,2})(?![.:]\d)\b(?:\s*Uhr\b)?", re.IGNORECASE)),
    ("bare_colon", re.compile(r"(?:^|[^0-9.])(\d{1,2}):(\d{2})\b")),
    ("bare_dot", re.compile(r"(?:^|[^0-9.])(\d{1,2})\.(\d{2})\b(?!\.)")),
]

# zip, then letters (any script) plus - . ' ( ) / and spaces, up to "gesucht" or the end
LOCATION_RE = re.compile(r"\b(\d{5})\s+((?:[^\W\d_]|[-.'()/\s])+?)(?:\s+gesucht\b|$)")


def normalize_subject(subject: str) -> str:
    s = " ".join((subject or "").split())
    # folded headers sometimes split "Uhr"
    s = re.sub(r"\bU\s+hr\b", "Uhr", s, flags=re.IGNORECASE)
    s = re.sub(r"\bmorgen,?\s*", "", s, flags=re.IGNORECASE)
    return s.strip()


def is_non_job_subject(subject: str) -> bool:
    return bool(NON_JOB_RE.search(subject or ""))


def extract_date(s: str) -> Optional[str]:
    for m in DATE_WITH_YEAR_RE.finditer(s):
        day, month = int(m.group(1)), int(m.group(2))
        if 1 <= day <= 31 and 1 <= month <= 12:
            return f"{z2(day)}.{z2(month)}.{m.group(3)}"

    # No year in the subject: assume the current calendar year.
    year = datetime.now().year
    for m in DATE_NO_YEAR_RE.finditer(s):
        day, month = int(m.group(1)), int(m.group(2))
        if 1 <= day <= 31 and 1 <= month <= 12:
            return f"{z2(day)}.{z2(month)}.{year}"
    return None


def extract_time(s: str) -> Optional[str]:
    for name, pattern in TIME_RULES:
        for m in pattern.finditer(s):
            hh = int(m.group(1))
            mm = int(m.group(2)) if m.lastindex and m.lastindex >= 2 else 0
            if hh <= 23 and mm <= 59:
                log.debug("Time matched", extra={"rule": name, "value": m.group(0).strip()})
                return f"{z2(hh)}:{z2(mm)}"
    return None


def extract_location(s: str) -> Optional[Tuple[str, str]]:
    m = LOCATION_RE.search(s)
    if not m:
        return None
    city = " ".join(m.group(2).split())
    return m.group(1), city


def parse_subject(subject: str, received_at: Optional[datetime] = None) -> Optional[JobRecord]:
    """
    Parse a job notification subject into a JobRecord.

    `received_at` is the message's INTERNALDATE. It is logged for diagnostics only;
    a missing year is filled from the current calendar year.
    Returns None for anything that is not a recognisable job subject.
    """
    if not subject:
        return None

    s = normalize_subject(subject)
    if is_non_job_subject(s):
        log.info("Ignoring non-job subject", extra={"subject": s})
        return None

    date = extract_date(s)
    if not date:
        log.debug("No date in subject", extra={"subject": s})
        return None

    time = extract_time(s)
    if not time:
        log.debug("No time in subject", extra={"subject": s})
        return None

    location = extract_location(s)
    if not location:
        log.debug("No zip/city in subject", extra={"subject": s})
        return None
    zip_code, city = location

    job = JobRecord(date=date, time=time, zip=zip_code, city=city)
    log.debug(
        "Parsed subject",
        extra={"job_key": job.key, "city": city, "received_at": received_at.isoformat() if received_at else None},
    )
    return job
