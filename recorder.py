import logging
import uuid
from datetime import datetime, timezone

from errors import InferenceError
from schemas import CANCER, NON_CANCER, SUGGESTIONS, PredictionRecord

logger = logging.getLogger(__name__)

THRESHOLD = 0.5
ID_LENGTH = 12


def classify(prob: float) -> str:
    return CANCER if prob > THRESHOLD else NON_CANCER


def generate_id() -> str:
    # Collisions are not checked against the store
    return uuid.uuid4().hex[:ID_LENGTH]


def utc_timestamp() -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_record(prob: float) -> PredictionRecord:
    result = classify(prob)
    return PredictionRecord(
        id=generate_id(),
        result=result,
        suggestion=SUGGESTIONS[result],
        createdAt=utc_timestamp(),
    )


async def record_prediction(store, prob: float) -> PredictionRecord:
    """Build the record for ``prob`` and return it once the write is confirmed."""
    record = build_record(prob)
    try:
        await store.save(record)
    except Exception as e:
        raise InferenceError(f"Failed to persist prediction {record.id}: {e}") from e

    logger.info("Stored prediction %s result=%s p=%.4f", record.id, record.result, prob)
    return record
