"""Short-lived user notifications returned alongside API results."""
from typing import Literal

from pydantic import BaseModel

NoticeType = Literal["info", "success", "warning", "error"]


class Notice(BaseModel):
    message: str
    type: NoticeType = "info"
    # milliseconds before auto-dismiss, 0 keeps it until replaced
    duration: int = 3000


def info(message: str, duration: int = 3000) -> Notice:
    return Notice(message=message, type="info", duration=duration)


def success(message: str, duration: int = 3000) -> Notice:
    return Notice(message=message, type="success", duration=duration)


def warning(message: str, duration: int = 5000) -> Notice:
    return Notice(message=message, type="warning", duration=duration)


def error(message: str, duration: int = 3000) -> Notice:
    return Notice(message=message, type="error", duration=duration)
