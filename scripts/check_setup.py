"""
Pre-flight check: required env vars, installed libraries, browser binary.

Usage:
  python -m scripts.check_setup
"""
import importlib
import sys
from pathlib import Path

from core.config import ConfigError, load_settings

MODULES = ("fastapi", "uvicorn", "dotenv", "playwright", "bs4")


def check_modules():
    missing = []
    for name in MODULES:
        try:
            importlib.import_module(name)
        except ImportError:
            missing.append(name)
    return missing


def check_browser() -> bool:
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import sync_playwright

    try:
        with sync_playwright() as p:
            return Path(p.chromium.executable_path).exists()
    except PlaywrightError:
        return False


def main():
    ok = True

    missing = check_modules()
    if missing:
        ok = False
        print(f"Missing Python packages: {', '.join(missing)} (pip install -e .)")
    else:
        print("Python packages: ok")

    try:
        settings = load_settings()
        print("Environment: ok")
        for key, value in settings.redacted().items():
            print(f"  {key}={value}")
        if Path(settings.auth_state_path).is_file():
            print(f"Saved session: {settings.auth_state_path}")
        else:
            print("Saved session: none (first start logs in)")
    except ConfigError as e:
        ok = False
        print(f"Environment: {e}")

    if "playwright" not in missing:
        if check_browser():
            print("Chromium: ok")
        else:
            ok = False
            print("Chromium: missing (python -m playwright install chromium)")

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
