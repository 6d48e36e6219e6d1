"""
Attempt Ingestion

Validates raw attempt events, normalizes them into immutable
``AttemptRecord`` objects and de-duplicates replays by attempt id. Nothing
downstream sees an event that failed validation.
"""

import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from progression.common.clock import Clock, get_clock
from progression.common.config import PerformanceConfig, get_config
from progression.common.exceptions import DuplicateError, ValidationError
from progression.common.logger import app_logger
from progression.performance.events import AttemptEvent
from progression.performance.models import AttemptRecord

logger = app_logger.getChild("performance.ingestor")

_ATTEMPT_NAMESPACE = uuid.UUID("6f1c2a4e-3b7d-4e59-9a0c-5d8e2f1b7c30")


def _pydantic_errors(exc: PydanticValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
        errors.setdefault(location, error.get("msg", "invalid value"))
    return errors


class AttemptIngestor:
    """
    Boundary between the game engine and the statistics core.

    ``parse`` only validates. ``ingest`` validates and also claims the attempt
    id, raising ``DuplicateError`` for an id that was already claimed. The set
    of claimed ids is bounded and forgets the oldest ids first.
    """

    def __init__(self, config: Optional[PerformanceConfig] = None, clock: Optional[Clock] = None):
        """
        Initialize the ingestor.

        Args:
            config: Performance configuration (score bounds, dedup capacity)
            clock: Clock used to stamp events that carry no timestamp
        """
        self.config = config or get_config().performance
        self.clock = clock or get_clock()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def parse(self, payload: Union[AttemptEvent, Mapping[str, Any]]) -> AttemptRecord:
        """
        Validate and normalize one attempt event.

        Args:
            payload: An ``AttemptEvent`` or a raw mapping

        Returns:
            The canonical attempt record

        Raises:
            ValidationError: if any field is missing, malformed or out of range
        """
        try:
            event = payload if isinstance(payload, AttemptEvent) else AttemptEvent.parse_obj(payload)
        except PydanticValidationError as e:
            errors = _pydantic_errors(e)
            logger.info(f"Rejected attempt event: {errors}")
            raise ValidationError("invalid attempt event", errors) from e
        except TypeError as e:
            raise ValidationError("attempt event must be a mapping", {"__root__": str(e)}) from e

        if event.score > self.config.max_score:
            raise ValidationError(
                "score out of range",
                {"score": f"must be between 0 and {self.config.max_score}"}
            )
        if event.time_elapsed_sec > self.config.max_time_elapsed_sec:
            raise ValidationError(
                "time elapsed out of range",
                {"time_elapsed_sec": f"must be between 0 and {self.config.max_time_elapsed_sec}"}
            )

        timestamp = event.timestamp or self.clock.now()
        attempt_id = event.attempt_id or str(uuid.uuid5(
            _ATTEMPT_NAMESPACE,
            f"{event.user_id}|{event.challenge_id}|{timestamp.isoformat()}"
        ))

        return AttemptRecord(
            attempt_id=attempt_id,
            user_id=event.user_id,
            challenge_id=event.challenge_id,
            challenge_type=event.challenge_type,
            concepts=frozenset(event.concepts),
            is_correct=event.is_correct,
            score=float(event.score),
            time_elapsed_sec=float(event.time_elapsed_sec),
            hints_used=event.hints_used,
            timestamp=timestamp,
            realm_id=event.realm_id,
            answer=event.answer,
        )

    def ingest(self, payload: Union[AttemptEvent, Mapping[str, Any]]) -> AttemptRecord:
        """
        Validate an event and claim its attempt id.

        Raises:
            ValidationError: if the event is invalid
            DuplicateError: if the attempt id has been ingested before
        """
        record = self.parse(payload)
        self.claim(record)
        return record

    def claim(self, record: AttemptRecord) -> None:
        """
        Claim the attempt id of an already parsed record.

        Raises:
            DuplicateError: if the attempt id has been claimed before
        """
        with self._lock:
            if record.attempt_id in self._seen:
                self._seen.move_to_end(record.attempt_id)
                raise DuplicateError("attempt", record.attempt_id)
            self._seen[record.attempt_id] = None
            while len(self._seen) > self.config.dedup_capacity:
                self._seen.popitem(last=False)

    def is_duplicate(self, attempt_id: str) -> bool:
        """Check whether ``attempt_id`` has been claimed."""
        with self._lock:
            return attempt_id in self._seen

    def forget(self, attempt_id: str) -> None:
        """Release a claimed id, used when applying the attempt failed."""
        with self._lock:
            self._seen.pop(attempt_id, None)
