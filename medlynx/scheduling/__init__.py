"""Trigger calculation, quiet hours, alarm reconciliation and user actions."""
