from models.base import Base, async_session, engine, get_session
from models.line import Location, Line, Machine
from models.user import User
from models.job import Job, JobLineMachineTag
from models.tag import Tag, TagRef, TagValue
from models.aggregation import AlarmAggregation, MachineStateAggregation
from models.notification import (
    ConditionType,
    Notification,
    NotificationEvent,
    NotificationType,
)
from models.oee_time_series import OEETimeSeries

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "Location",
    "Line",
    "Machine",
    "User",
    "Job",
    "JobLineMachineTag",
    "Tag",
    "TagRef",
    "TagValue",
    "AlarmAggregation",
    "MachineStateAggregation",
    "ConditionType",
    "Notification",
    "NotificationEvent",
    "NotificationType",
    "OEETimeSeries",
]
