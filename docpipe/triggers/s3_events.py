"""
S3 trigger listener.

Turns an S3 ObjectCreated notification into one Orchestrator.start() per
record:

    {"Records": [{"s3": {"bucket": {"name": "b"}, "object": {"key": "docs/a%20b.pdf"}}}]}

Object keys arrive URL-encoded (spaces as '+'), so they are decoded with
unquote_plus before becoming a DocumentRef. Objects under the results prefix
are skipped: the pipeline writes its output into the same bucket and must
not trigger itself.

A direct form is accepted as well, for manual starts and tests:

    {"documentRef": {"container": "b", "key": "docs/a.pdf"}}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote_plus

from docpipe.pipeline.orchestrator import Orchestrator
from docpipe.pipeline.types import DocumentRef

logger = logging.getLogger(__name__)


class InvalidEventError(ValueError):
    """The event matches neither the S3 notification nor the documentRef shape."""


@dataclass
class TriggerResult:
    started: list[str] = field(default_factory=list)    # execution IDs
    skipped: list[str] = field(default_factory=list)    # "<bucket>/<key>" ignored


def _is_object_created(record: dict[str, Any]) -> bool:
    name = record.get("eventName")
    # Test events and hand-built records carry no eventName
    return name is None or str(name).startswith("ObjectCreated")


def parse_s3_event(event: dict[str, Any], results_prefix: str = "results/") -> tuple[list[DocumentRef], list[str]]:
    """
    Extract document refs from an event.
    Returns (refs to start, skipped "<bucket>/<key>" strings).
    Raises InvalidEventError on a malformed event.
    """
    if "documentRef" in event:
        ref_data = event["documentRef"] or {}
        try:
            return [DocumentRef(container=ref_data["container"], key=ref_data["key"])], []
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidEventError(f"Invalid documentRef: {exc}") from exc

    records = event.get("Records")
    if not isinstance(records, list):
        raise InvalidEventError("Event has neither 'Records' nor 'documentRef'")

    refs: list[DocumentRef] = []
    skipped: list[str] = []
    for record in records:
        try:
            bucket = record["s3"]["bucket"]["name"]
            key = unquote_plus(record["s3"]["object"]["key"])
        except (KeyError, TypeError) as exc:
            raise InvalidEventError(f"Malformed S3 record: missing {exc}") from exc

        if not _is_object_created(record):
            skipped.append(f"{bucket}/{key}")
            continue
        if results_prefix and key.startswith(results_prefix):
            skipped.append(f"{bucket}/{key}")
            continue
        if key.endswith("/"):
            # Folder placeholder objects created by the console
            skipped.append(f"{bucket}/{key}")
            continue

        try:
            refs.append(DocumentRef(container=bucket, key=key))
        except ValueError as exc:
            raise InvalidEventError(str(exc)) from exc

    return refs, skipped


async def handle_s3_event(
    event: dict[str, Any],
    orchestrator: Orchestrator,
    results_prefix: str = "results/",
) -> TriggerResult:
    refs, skipped = parse_s3_event(event, results_prefix)
    result = TriggerResult(skipped=skipped)

    for object_path in skipped:
        logger.info("Trigger skipped | object=%s", object_path)

    for ref in refs:
        execution_id = await orchestrator.start(ref)
        result.started.append(execution_id)
        logger.info("Trigger accepted | doc=%s exec=%s", ref, execution_id)

    return result
