"""Notifications: rule evaluation, duration gating, escalation and delivery.

Entry points live on NotificationDispatcher (dispatcher.py):
  on_tag_value_changed       evaluate rules for a tag change
  run_duration_check         queue handler for 'check-duration' jobs
  run_escalation_check       queue handler for 'escalation-check' jobs
  on_notification_acknowledged / acknowledge_by_token
"""
