"""
Send the test notification with the configured SMTP settings.

Usage:
  python -m scripts.send_test_email
"""
import smtplib
import sys

from app.email_utils import NotificationSender
from core.config import ConfigError, load_settings


def main():
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    print(f"SMTP {settings.smtp_host}:{settings.smtp_port} as {settings.email_address}")
    try:
        NotificationSender(settings).send_test()
    except (smtplib.SMTPException, OSError) as e:
        print(f"SMTP test failed: {e}")
        sys.exit(2)
    print(f"Test email sent to {settings.notify_email}")


if __name__ == "__main__":
    main()
