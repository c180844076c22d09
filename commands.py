# Quick reference commands (run from repo root). These are comments only; copy/paste as needed.

# Install the project with test dependencies, then the Chromium build Playwright drives
# python -m pip install -e ".[test]"
# python -m playwright install chromium

# Run the full test suite
# python -m pytest

# Run focused test files
# python -m pytest tests/test_subject_parser.py
# python -m pytest tests/test_listings.py tests/test_engine.py
# python -m pytest tests/test_mailbox.py
# python -m pytest tests/test_service.py tests/test_api.py

# Check env vars and dependencies before the first run
# python -m scripts.check_setup

# Start the service with the HTTP control API (reads .env)
# python main.py

# Start the service without HTTP
# python -m worker.main

# Apply once by hand (visible browser)
# PLAYWRIGHT_HEADLESS=false python -m scripts.test_apply 23.08.2025 15:00 58452 Witten

# Check SMTP settings
# python -m scripts.send_test_email

# Poke a running service
# curl -s localhost:3000/health
# curl -s localhost:3000/stats
# curl -s -X POST localhost:3000/trigger -H "Content-Type: application/json" \
#      -d '{"date": "23.08.2025", "time": "15:00", "zip": "58452", "city": "Witten"}'
# curl -s -X POST localhost:3000/test-email
