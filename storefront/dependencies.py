"""Request-scoped access to the collaborators the app was built with."""
from fastapi import Request

from .calendar_sync import CalendarSyncNotifier
from .messaging import EventPublisher


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_calendar(request: Request) -> CalendarSyncNotifier:
    return request.app.state.calendar


def get_upload_dir(request: Request) -> str:
    return request.app.state.upload_dir
