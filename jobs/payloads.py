"""Replayable job descriptions.

A closure cannot be written to the job store, so a job is only resumable
after a restart when it was enqueued with a payload the registry knows how to
turn back into a callable. Jobs without one stay inspectable but are never
re-run.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import RehydrationError, UnknownPayloadError

logger = logging.getLogger(__name__)

JobFn = Callable[[], Any]
PayloadFactory = Callable[[Any], JobFn]


class JobPayload(BaseModel):
    """Base for payload shapes; ``type`` selects the factory."""

    model_config = ConfigDict(populate_by_name=True)

    type: str

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class GraphExecutionPayload(JobPayload):
    """Run an agent graph against a prompt."""

    type: Literal["graph-execution"] = "graph-execution"
    graph_id: str = Field(alias="graphId")
    prompt: str


class IndexDocumentsPayload(JobPayload):
    """Index a batch of codebase documents into the vector store."""

    type: Literal["index-documents"] = "index-documents"
    documents: List[Dict[str, Any]] = Field(min_length=1)
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")


def graph_execution_factory(
    execute_graph: Callable[[str, Dict[str, Any]], Awaitable[Any]],
) -> PayloadFactory:
    """Adapt ``execute_graph(graph_id, {"prompt": ...})`` into a payload factory."""

    def _factory(payload: GraphExecutionPayload) -> JobFn:
        async def _run() -> Any:
            return await execute_graph(payload.graph_id, {"prompt": payload.prompt})

        return _run

    return _factory


def index_documents_factory(
    index_documents: Callable[[List[Dict[str, Any]], Optional[str]], Awaitable[Any]],
) -> PayloadFactory:
    """Adapt ``index_documents(documents, requested_by)`` into a payload factory."""

    def _factory(payload: IndexDocumentsPayload) -> JobFn:
        async def _run() -> Any:
            return await index_documents(payload.documents, payload.requested_by)

        return _run

    return _factory


class PayloadRegistry:
    """Maps payload ``type`` strings to a model and a callable factory."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[Type[JobPayload], PayloadFactory]] = {}

    def register(
        self,
        payload_type: str,
        model: Type[JobPayload],
        factory: PayloadFactory,
    ) -> None:
        if payload_type in self._entries:
            logger.warning("Replacing payload factory for type %r", payload_type)
        self._entries[payload_type] = (model, factory)

    def __contains__(self, payload_type: object) -> bool:
        return payload_type in self._entries

    @property
    def types(self) -> List[str]:
        return sorted(self._entries)

    def is_known(self, payload: Optional[Dict[str, Any]]) -> bool:
        return isinstance(payload, dict) and payload.get("type") in self._entries

    def build(self, payload: Dict[str, Any]) -> Tuple[JobPayload, JobFn]:
        """Validate *payload* and return ``(model, callable)``.

        Raises
        ------
        UnknownPayloadError
            No factory is registered for ``payload["type"]``.
        RehydrationError
            The payload does not validate or the factory fails.
        """
        payload_type = payload.get("type") if isinstance(payload, dict) else None
        if payload_type not in self._entries:
            raise UnknownPayloadError(payload_type)
        model_cls, factory = self._entries[payload_type]
        try:
            model = model_cls.model_validate(payload)
        except ValidationError as exc:
            raise RehydrationError(f"Invalid {payload_type!r} payload: {exc}") from exc
        try:
            fn = factory(model)
        except Exception as exc:
            raise RehydrationError(f"Factory for {payload_type!r} failed: {exc}") from exc
        if not callable(fn):
            raise RehydrationError(f"Factory for {payload_type!r} returned {type(fn).__name__}")
        return model, fn
