"""
Parsing and matching of the "Meine Jobs" listing page.

Everything here works on HTML strings, so each matching and verification
strategy can be exercised against fixture pages without a browser.

Page structure (as served by the site):

    <div class="entry" data-status="new">
      <span class="date location">Am 23.08.2025 um 15:00 in 58452 Witten</span>
      ... #49982 ...
      <form action="/intern/meine-jobs" method="post">
        <input type="hidden" name="REQUEST_TOKEN" value="...">
        <button id="ctrl_accept" name="accept" value="1">annehmen</button>
      </form>
    </div>
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from core.models import JobRecord

ENTRY_SELECTOR = "div.entry"
LOCATION_SELECTOR = "span.date.location"
ACCEPT_SELECTOR = '#ctrl_accept, [name="accept"]'
CANCEL_SELECTORS = (".btn.red", ".accepted-state")
CANCEL_BUTTON_TEXTS = ("x", "×", "✕")

NEW_STATUSES = ("new", "neu")
ACCEPTED_STATUS_RE = re.compile(r"waiting|wartend|accepted|angenommen|pending", re.IGNORECASE)
ENTRY_ID_RE = re.compile(r"#\s?(\d{4,7})")
LOCATION_PHRASE_RE = re.compile(r"Am\s+\d{1,2}\.\d{1,2}\.\d{4}\s+um\s+\d{1,2}:\d{2}\s+in\s+\d{5}", re.IGNORECASE)


@dataclass(frozen=True)
class ListingForm:
    action: str
    method: str = "POST"
    fields: Tuple[Tuple[str, str], ...] = ()
    has_accept_control: bool = False

    def as_dict(self) -> Dict[str, str]:
        return dict(self.fields)


@dataclass(frozen=True)
class Listing:
    location_text: str
    status: str = ""
    entry_id: Optional[str] = None
    text: str = ""
    form: Optional[ListingForm] = None
    has_cancel_control: bool = False

    @property
    def is_new(self) -> bool:
        return self.status.lower() in NEW_STATUSES

    @property
    def is_accepted(self) -> bool:
        return bool(ACCEPTED_STATUS_RE.search(self.status))

    @property
    def location_phrase(self) -> str:
        """The "Am ... um ... in ..." line, read from the entry text when the span is missing."""
        if self.location_text:
            return self.location_text
        m = LOCATION_PHRASE_RE.search(self.text)
        return m.group(0) if m else ""


def _clean(text: str) -> str:
    return " ".join((text or "").split())


def _form_fields(form) -> List[Tuple[str, str]]:
    fields: List[Tuple[str, str]] = []
    for el in form.find_all(["input", "textarea", "select"]):
        name = el.get("name")
        if not name or el.has_attr("disabled"):
            continue
        if el.name == "input":
            kind = (el.get("type") or "text").lower()
            if kind in ("submit", "button", "image", "reset", "file"):
                continue
            if kind in ("checkbox", "radio") and not el.has_attr("checked"):
                continue
            fields.append((name, el.get("value") or ("on" if kind in ("checkbox", "radio") else "")))
        elif el.name == "textarea":
            fields.append((name, el.get_text()))
        else:
            option = el.find("option", selected=True) or el.find("option")
            if option is not None:
                fields.append((name, option.get("value", option.get_text())))
    return fields


def _parse_form(entry, base_url: str) -> Optional[ListingForm]:
    accept = entry.select_one(ACCEPT_SELECTOR)
    accept_form = accept.find_parent("form") if accept is not None else None
    form = accept_form if accept_form is not None else entry.find("form")
    if form is None:
        return None

    fields = _form_fields(form)
    has_accept = accept_form is not None
    if has_accept and accept.get("name"):
        # the server reads the clicked button's name/value
        fields = [(k, v) for k, v in fields if k != accept["name"]]
        fields.append((accept["name"], accept.get("value") or "1"))

    return ListingForm(
        action=urljoin(base_url, form.get("action") or base_url),
        method=(form.get("method") or "POST").upper(),
        fields=tuple(fields),
        has_accept_control=has_accept,
    )


def _has_cancel_control(entry) -> bool:
    for selector in CANCEL_SELECTORS:
        if entry.select_one(selector) is not None:
            return True
    for button in entry.find_all("button"):
        if _clean(button.get_text()).lower() in CANCEL_BUTTON_TEXTS:
            return True
    return False


def parse_listings(html: str, base_url: str) -> List[Listing]:
    """Parse every `div.entry` on the page into a Listing."""
    soup = BeautifulSoup(html or "", "html.parser")
    listings: List[Listing] = []
    for entry in soup.select(ENTRY_SELECTOR):
        location = entry.select_one(LOCATION_SELECTOR)
        text = _clean(entry.get_text(" "))
        entry_id = entry.get("data-job-id")
        if not entry_id:
            m = ENTRY_ID_RE.search(text)
            entry_id = m.group(1) if m else None
        listings.append(
            Listing(
                location_text=_clean(location.get_text(" ")) if location is not None else "",
                status=(entry.get("data-status") or "").strip(),
                entry_id=entry_id,
                text=text,
                form=_parse_form(entry, base_url),
                has_cancel_control=_has_cancel_control(entry),
            )
        )
    return listings


# -------- Matching --------


def _time_pattern(time: str) -> str:
    # the page may render 09:00 as 9:00
    if time.startswith("0"):
        return "0?" + re.escape(time[1:])
    return re.escape(time)


def location_pattern(job: JobRecord, with_city: bool = True) -> re.Pattern:
    """
    "Am {date} um {time} in {zip}" plus the city when known.
    `\\s` also matches NBSP, which the site uses between words.
    """
    body = r"Am\s+{}\s+um\s+{}\s+in\s+{}".format(re.escape(job.date), _time_pattern(job.time), re.escape(job.zip))
    if with_city and job.city:
        body += r"\s+" + r"\s+".join(re.escape(word) for word in job.city.split())
    return re.compile(body, re.IGNORECASE)


@dataclass(frozen=True)
class MatchStrategy:
    name: str
    predicate: Callable[[Listing, JobRecord], bool]

    def find(self, listings: Sequence[Listing], job: JobRecord) -> Optional[Listing]:
        for listing in listings:
            if self.predicate(listing, job):
                return listing
        return None


def _location_matches(listing: Listing, job: JobRecord) -> bool:
    return bool(location_pattern(job).search(listing.location_text))


MATCH_STRATEGIES: List[MatchStrategy] = [
    MatchStrategy("new_entry", lambda listing, job: listing.is_new and _location_matches(listing, job)),
    MatchStrategy("any_entry", _location_matches),
    MatchStrategy(
        "without_city",
        lambda listing, job: bool(job.city) and bool(location_pattern(job, with_city=False).search(listing.location_text)),
    ),
    MatchStrategy(
        "entry_text",
        lambda listing, job: not listing.location_text and bool(location_pattern(job).search(listing.text)),
    ),
]


def find_listing(
    listings: Sequence[Listing],
    job: JobRecord,
    strategies: Sequence[MatchStrategy] = MATCH_STRATEGIES,
) -> Optional[Tuple[str, Listing]]:
    """Run the strategies in order; return (strategy name, listing) for the first hit."""
    for strategy in strategies:
        listing = strategy.find(listings, job)
        if listing is not None:
            return strategy.name, listing
    return None


# -------- Verification after submitting --------


def same_listing(before: Listing, listings: Sequence[Listing]) -> Optional[Listing]:
    for listing in listings:
        if before.entry_id and listing.entry_id:
            if listing.entry_id == before.entry_id:
                return listing
        elif before.location_phrase and listing.location_phrase == before.location_phrase:
            return listing
        elif not before.location_phrase and before.text and listing.text == before.text:
            return listing
    return None


@dataclass(frozen=True)
class VerifyStrategy:
    name: str
    check: Callable[[Listing, Optional[Listing]], bool]


VERIFY_STRATEGIES: List[VerifyStrategy] = [
    VerifyStrategy("listing_removed", lambda before, after: after is None),
    VerifyStrategy("status_changed", lambda before, after: after is not None and after.is_accepted),
    VerifyStrategy("cancel_control", lambda before, after: after is not None and after.has_cancel_control),
]


def verify_submission(
    before: Listing,
    listings_after: Sequence[Listing],
    strategies: Sequence[VerifyStrategy] = VERIFY_STRATEGIES,
) -> Optional[str]:
    """Return the name of the first strategy that confirms acceptance, or None."""
    after = same_listing(before, listings_after)
    for strategy in strategies:
        if strategy.check(before, after):
            return strategy.name
    return None


__all__ = [
    "Listing",
    "ListingForm",
    "MatchStrategy",
    "VerifyStrategy",
    "MATCH_STRATEGIES",
    "VERIFY_STRATEGIES",
    "parse_listings",
    "location_pattern",
    "find_listing",
    "same_listing",
    "verify_submission",
]
