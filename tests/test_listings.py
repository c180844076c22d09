from core.models import JobRecord
from worker.listings import (
    MATCH_STRATEGIES,
    find_listing,
    location_pattern,
    parse_listings,
    verify_submission,
)

JOBS_URL = "https://studenten-umzugshilfe.com/intern/meine-jobs"

NEW_ENTRY = """
<div class="entry" data-status="new">
  <span class="date location">Am&nbsp;23.08.2025 um 15:00 in 58452&nbsp;Witten</span>
  <p>Auftrag #49982, 2 Helfer</p>
  <form action="/intern/meine-jobs" method="post">
    <input type="hidden" name="FORM_SUBMIT" value="job_accept">
    <input type="hidden" name="REQUEST_TOKEN" value="tok123">
    <input type="submit" name="ignored" value="nope">
    <button id="ctrl_accept" name="accept" value="49982" type="submit">annehmen</button>
  </form>
</div>
"""

WAITING_ENTRY = """
<div class="entry" data-status="waiting" data-job-id="50001">
  <span class="date location">Am 24.08.2025 um 9:00 in 10115 Berlin</span>
  <button class="btn red" type="button">x</button>
</div>
"""

NO_SPAN_ENTRY = """
<div class="entry" data-status="new">
  <p>Am 25.08.2025 um 10:00 in 44137 Dortmund</p>
  <form action="accept.php" method="get">
    <input type="hidden" name="id" value="777">
    <input type="checkbox" name="terms" checked>
    <input type="checkbox" name="newsletter">
    <button name="accept" type="submit">annehmen</button>
  </form>
</div>
"""


def _page(*entries):
    return "<html><body><div class='jobs'>" + "".join(entries) + "</div></body></html>"


def test_parse_listing_with_accept_form():
    [listing] = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    assert listing.location_text == "Am 23.08.2025 um 15:00 in 58452 Witten"
    assert listing.status == "new"
    assert listing.is_new and not listing.is_accepted
    assert listing.entry_id == "49982"
    assert not listing.has_cancel_control

    form = listing.form
    assert form.action == JOBS_URL
    assert form.method == "POST"
    assert form.has_accept_control
    assert form.as_dict() == {"FORM_SUBMIT": "job_accept", "REQUEST_TOKEN": "tok123", "accept": "49982"}


def test_parse_accepted_listing():
    [listing] = parse_listings(_page(WAITING_ENTRY), JOBS_URL)
    assert listing.entry_id == "50001"
    assert listing.is_accepted
    assert listing.has_cancel_control
    assert listing.form is None


def test_parse_form_defaults():
    [listing] = parse_listings(_page(NO_SPAN_ENTRY), JOBS_URL)
    assert listing.location_text == ""
    assert listing.form.method == "GET"
    assert listing.form.action == "https://studenten-umzugshilfe.com/intern/accept.php"
    assert listing.form.as_dict() == {"id": "777", "terms": "on", "accept": "1"}


def test_parse_empty_page():
    assert parse_listings("<html><body><p>Keine Jobs</p></body></html>", JOBS_URL) == []
    assert parse_listings("", JOBS_URL) == []


def test_location_pattern_tolerates_whitespace_and_leading_zero():
    job = JobRecord("24.08.2025", "09:00", "10115", "Berlin")
    assert location_pattern(job).search("am  24.08.2025 um 9:00 in 10115 BERLIN")
    assert not location_pattern(job).search("Am 24.08.2025 um 19:00 in 10115 Berlin")


def test_strategy_order_is_stable():
    assert [s.name for s in MATCH_STRATEGIES] == ["new_entry", "any_entry", "without_city", "entry_text"]


def test_match_new_entry():
    listings = parse_listings(_page(WAITING_ENTRY, NEW_ENTRY), JOBS_URL)
    name, listing = find_listing(listings, JobRecord("23.08.2025", "15:00", "58452", "Witten"))
    assert name == "new_entry"
    assert listing.entry_id == "49982"


def test_match_any_entry_when_not_new():
    listings = parse_listings(_page(NEW_ENTRY, WAITING_ENTRY), JOBS_URL)
    name, listing = find_listing(listings, JobRecord("24.08.2025", "09:00", "10115", "Berlin"))
    assert name == "any_entry"
    assert listing.entry_id == "50001"


def test_match_without_city():
    listings = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    name, _ = find_listing(listings, JobRecord("23.08.2025", "15:00", "58452", "Witten-Annen"))
    assert name == "without_city"


def test_match_entry_text_when_location_span_missing():
    listings = parse_listings(_page(NEW_ENTRY, NO_SPAN_ENTRY), JOBS_URL)
    name, listing = find_listing(listings, JobRecord("25.08.2025", "10:00", "44137", "Dortmund"))
    assert name == "entry_text"
    assert listing.form.as_dict()["id"] == "777"


def test_no_match():
    listings = parse_listings(_page(NEW_ENTRY, WAITING_ENTRY), JOBS_URL)
    assert find_listing(listings, JobRecord("23.08.2025", "16:00", "58452", "Witten")) is None
    assert find_listing([], JobRecord("23.08.2025", "15:00", "58452")) is None


def test_verify_listing_removed():
    [before] = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    after = parse_listings(_page(WAITING_ENTRY), JOBS_URL)
    assert verify_submission(before, after) == "listing_removed"


def test_verify_status_changed():
    [before] = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    after = parse_listings(_page(NEW_ENTRY.replace('data-status="new"', 'data-status="wartend"')), JOBS_URL)
    assert verify_submission(before, after) == "status_changed"


def test_verify_cancel_control():
    [before] = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    changed = NEW_ENTRY.replace('data-status="new"', 'data-status=""').replace(
        "</form>", '</form><span class="accepted-state">Angenommen</span>'
    )
    after = parse_listings(_page(changed), JOBS_URL)
    assert verify_submission(before, after) == "cancel_control"


def test_verify_unchanged_listing():
    [before] = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    after = parse_listings(_page(NEW_ENTRY), JOBS_URL)
    assert verify_submission(before, after) is None


def test_verify_unchanged_listing_without_location_span():
    [before] = parse_listings(_page(NO_SPAN_ENTRY), JOBS_URL)
    assert before.entry_id is None and before.location_text == ""
    assert before.location_phrase == "Am 25.08.2025 um 10:00 in 44137"

    after = parse_listings(_page(NEW_ENTRY, NO_SPAN_ENTRY), JOBS_URL)
    assert verify_submission(before, after) is None


def test_verify_status_change_without_location_span():
    [before] = parse_listings(_page(NO_SPAN_ENTRY), JOBS_URL)
    after = parse_listings(_page(NO_SPAN_ENTRY.replace('data-status="new"', 'data-status="waiting"')), JOBS_URL)
    assert verify_submission(before, after) == "status_changed"


def test_verify_removed_listing_without_location_span():
    [before] = parse_listings(_page(NO_SPAN_ENTRY), JOBS_URL)
    assert verify_submission(before, parse_listings(_page(NEW_ENTRY), JOBS_URL)) == "listing_removed"
