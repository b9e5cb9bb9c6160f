from fastapi import Request
from app.services.delivery_tracker import DeliveryTracker
from app.services.notifier import Notifier
from app.services.presence import PresenceService
from app.services.retry_scheduler import RetryScheduler

# Process-wide services are built in app.main and parked on app.state

def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier

def get_delivery_tracker(request: Request) -> DeliveryTracker:
    return request.app.state.delivery_tracker

def get_retry_scheduler(request: Request) -> RetryScheduler:
    return request.app.state.retry_scheduler

def get_presence_service(request: Request) -> PresenceService:
    return request.app.state.presence
