from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field


class GenerationRequest(BaseModel):
    """Structured prompt handed to the generation backend."""

    action: str
    prompt: str
    output_schema: Optional[Dict[str, Any]] = Field(
        default=None, description="JSON schema the backend's result must satisfy."
    )
    options: Dict[str, Any] = Field(default_factory=dict)


class GenerationBackend(ABC):
    """
    External generation collaborator (LLM flow, vendor API, ...).

    Implementations return the structured result or raise; timeouts are
    enforced by the caller.
    """

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Mapping[str, Any]:
        ...
