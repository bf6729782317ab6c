"""Alerting - persisted, idempotent Alerts derived from rule matches."""

from src.alerting.manager import AlertManager

__all__ = ["AlertManager"]
