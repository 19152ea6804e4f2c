"""
Downstream collaborators

Instructions produced by the disposition step and the sinks that deliver
them: notification, search index and review queue. Each sink has an HTTP
implementation (httpx, retried on 5xx/429) and a log-only implementation
used when no collaborator URL is configured.
"""

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from .config import Settings, get_config
from .errors import SideEffectUnavailableError
from .retry import convert_http_error, retry_side_effect

logger = logging.getLogger(__name__)


class SearchIndexAction(str, enum.Enum):
    UPDATE = "Update"
    DELETE = "Delete"


class QueueRank(str, enum.Enum):
    KNIGHT = "Knight"
    TEMPLAR = "Templar"


class QueuePriority(enum.IntEnum):
    STANDARD = 1
    NSFW = 2
    ELEVATED = 3


@dataclass
class NotificationRequest:
    user_id: int
    key: str
    message: str
    category: str = "System"
    type: str = "system-message"
    url: Optional[str] = None


@dataclass
class SearchIndexInstruction:
    media_id: int
    action: SearchIndexAction


@dataclass
class ReviewQueueAdmission:
    media_id: int
    priority: QueuePriority
    rank: QueueRank
    reviewer: Optional[str] = None
    reason: Optional[str] = None


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, request: NotificationRequest) -> None:
        pass


class SearchIndexSink(ABC):
    @abstractmethod
    async def queue(self, instruction: SearchIndexInstruction) -> None:
        pass


class ReviewQueueSink(ABC):
    @abstractmethod
    async def admit(self, admission: ReviewQueueAdmission) -> None:
        pass


# Log-only sinks

class LoggingNotificationSink(NotificationSink):
    async def send(self, request: NotificationRequest) -> None:
        logger.info(f"Notification for user {request.user_id}: {request.message}", extra={"key": request.key})


class LoggingSearchIndexSink(SearchIndexSink):
    async def queue(self, instruction: SearchIndexInstruction) -> None:
        logger.info(f"Search index {instruction.action.value} for media {instruction.media_id}")


class LoggingReviewQueueSink(ReviewQueueSink):
    async def admit(self, admission: ReviewQueueAdmission) -> None:
        logger.info(
            f"Review queue admission for media {admission.media_id}",
            extra={"priority": int(admission.priority), "rank": admission.rank.value},
        )


# HTTP sinks

def _payload(instruction: Any) -> Dict[str, Any]:
    data = asdict(instruction)
    for key, value in data.items():
        if isinstance(value, enum.Enum):
            data[key] = value.value
    return data


class HttpCollaborator:
    """JSON-over-HTTP client for one collaborator service"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._post = retry_side_effect(max_retries=max_retries, sleep=sleep)(self._post_once)

    async def _post_once(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            response = await self.client.post(path, json=payload)
        except httpx.TransportError as e:
            raise SideEffectUnavailableError(f"{self.__class__.__name__} unreachable: {e}") from e
        if response.status_code >= 400:
            raise convert_http_error(response.status_code, response.text)

    async def close(self) -> None:
        await self.client.aclose()


class HttpNotificationSink(HttpCollaborator, NotificationSink):
    async def send(self, request: NotificationRequest) -> None:
        await self._post("/notifications", _payload(request))


class HttpSearchIndexSink(HttpCollaborator, SearchIndexSink):
    async def queue(self, instruction: SearchIndexInstruction) -> None:
        await self._post("/search-index/media", _payload(instruction))


class HttpReviewQueueSink(HttpCollaborator, ReviewQueueSink):
    async def admit(self, admission: ReviewQueueAdmission) -> None:
        await self._post("/review-queue/media", _payload(admission))


@dataclass
class Sinks:
    notification: NotificationSink
    search_index: SearchIndexSink
    review_queue: ReviewQueueSink

    async def close(self) -> None:
        for sink in (self.notification, self.search_index, self.review_queue):
            if isinstance(sink, HttpCollaborator):
                await sink.close()


def create_sinks(settings: Optional[Settings] = None) -> Sinks:
    """HTTP sinks for configured collaborator URLs, log-only sinks otherwise"""
    settings = settings or get_config()
    timeout = settings.side_effect_timeout_seconds

    notification = (
        HttpNotificationSink(settings.notification_service_url, timeout=timeout)
        if settings.notification_service_url else LoggingNotificationSink()
    )
    search_index = (
        HttpSearchIndexSink(settings.search_index_service_url, timeout=timeout)
        if settings.search_index_service_url else LoggingSearchIndexSink()
    )
    review_queue = (
        HttpReviewQueueSink(settings.review_queue_service_url, timeout=timeout)
        if settings.review_queue_service_url else LoggingReviewQueueSink()
    )
    return Sinks(notification=notification, search_index=search_index, review_queue=review_queue)
