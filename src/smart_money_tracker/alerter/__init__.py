"""Alerting layer - Signal formatting for Telegram delivery."""

from smart_money_tracker.alerter.formatter import AlertFormatter, truncate_address
from smart_money_tracker.alerter.models import FormattedAlert, InlineButtons

__all__ = [
    "AlertFormatter",
    "FormattedAlert",
    "InlineButtons",
    "truncate_address",
]
