# partner_portal/forms/sync.py
"""
Forms for scheduled sync task management
"""

import json

from wtforms import BooleanField, Field, Form, IntegerField, StringField
from wtforms.validators import ValidationError

from partner_portal.sync.errors import TaskConfigurationError
from partner_portal.sync.orchestrator import parse_schedule_days, parse_schedule_time
from partner_portal.sync.task_config import parse_task_config

MAX_INTERVAL_MINUTES = 7 * 24 * 60


class ScheduledTaskForm(Form):
    """
    Validates a partial update to a scheduled task.

    Built from a JSON payload (``ScheduledTaskForm(data=payload, task_type=...)``);
    only the keys present in the payload are applied by ``apply_to``.
    """

    enabled = BooleanField("Enabled")
    interval_minutes = IntegerField("Interval (minutes)")
    schedule_days = StringField("Schedule days")
    schedule_time = StringField("Schedule time (UTC, HH:MM)")
    config = Field("Configuration")

    def __init__(self, *args, task_type=None, **kwargs):
        self.payload = dict(kwargs.get("data") or {})
        self.provided = frozenset(self.payload)
        self.task_type = task_type
        self.parsed_config = None
        super().__init__(*args, **kwargs)

    def validate_enabled(self, field):
        if "enabled" in self.provided and not isinstance(self.payload.get("enabled"), bool):
            raise ValidationError("enabled must be a boolean.")

    def validate_interval_minutes(self, field):
        if field.data is None:
            return
        if field.data < 1 or field.data > MAX_INTERVAL_MINUTES:
            raise ValidationError(f"Interval must be between 1 and {MAX_INTERVAL_MINUTES} minutes.")

    def validate_schedule_days(self, field):
        if not field.data:
            return
        if not isinstance(field.data, str):
            raise ValidationError("schedule_days must be a string such as \"mon,wed\" or \"daily\".")
        try:
            parse_schedule_days(field.data)
        except TaskConfigurationError as exc:
            raise ValidationError(str(exc)) from exc

    def validate_schedule_time(self, field):
        if not field.data:
            return
        if not isinstance(field.data, str):
            raise ValidationError("schedule_time must be a string in HH:MM form.")
        try:
            parse_schedule_time(field.data)
        except TaskConfigurationError as exc:
            raise ValidationError(str(exc)) from exc

    def validate_config(self, field):
        if "config" not in self.provided:
            return
        raw = field.data
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Configuration must be valid JSON: {exc}") from exc
        if raw is None:
            raw = {}
        try:
            self.parsed_config = parse_task_config(self.task_type, raw)
        except TaskConfigurationError as exc:
            raise ValidationError(str(exc)) from exc

    def apply_to(self, task):
        """Copy the provided, validated fields onto a ``ScheduledTask``."""
        changed = {}
        if "enabled" in self.provided:
            task.enabled = bool(self.enabled.data)
            changed["enabled"] = task.enabled
        if "interval_minutes" in self.provided:
            task.interval_minutes = self.interval_minutes.data
            changed["interval_minutes"] = task.interval_minutes
        if "schedule_days" in self.provided:
            task.schedule_days = self.schedule_days.data or None
            changed["schedule_days"] = task.schedule_days
        if "schedule_time" in self.provided:
            task.schedule_time = self.schedule_time.data or None
            changed["schedule_time"] = task.schedule_time
        if self.parsed_config is not None:
            task.config = self.parsed_config.to_dict()
            changed["config"] = task.config
        return changed
