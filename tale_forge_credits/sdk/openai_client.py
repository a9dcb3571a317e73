"""
Charged OpenAI story client.

Generation endpoints built on OpenAI, charged through the credit coordinator.
Each method only supplies cost inputs and a work closure; pricing and
charging stay in the coordinator.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.coordinator import ChargeResult, CreditCoordinator, GeneratedArtifact
from ..storage.models import OperationKind


class ChargedStoryClient:
    """OpenAI client wrapper that charges credits for successful generations.

    Failures from OpenAI surface as ``WorkFailed`` and are never charged.
    """

    def __init__(
        self,
        coordinator: CreditCoordinator,
        model: str = "gpt-4o-mini",
        tts_model: str = "tts-1",
        client: Optional[OpenAI] = None
    ):
        """Initialize charged story client.

        Args:
            coordinator: Coordinator that charges for each generation
            model: Chat model used for story text
            tts_model: Speech model used for narration
            client: OpenAI client; a default client is created when omitted

        Raises:
            ValueError: If model or tts_model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not tts_model or not tts_model.strip():
            raise ValueError("tts_model is required and cannot be empty")

        self.coordinator = coordinator
        self.model = model
        self.tts_model = tts_model
        self.client = client or OpenAI()

    def generate_segment(
        self,
        user_id: str,
        request_id: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        **kwargs: Any
    ) -> ChargeResult:
        """Generate the next story segment.

        Args:
            user_id: Account paying for the segment
            request_id: Stable client request id, reused on retries
            messages: Chat messages for the completion (required)
            temperature: Sampling temperature (optional)
            **kwargs: Additional OpenAI parameters

        Raises:
            ValueError: If messages is empty
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        def work() -> GeneratedArtifact:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                **kwargs
            )
            text = response.choices[0].message.content
            if not text:
                raise ValueError("OpenAI response contained no story text")
            return GeneratedArtifact(
                id=request_id,
                payload=text,
                metadata={"model": self.model, "response_id": response.id}
            )

        return self.coordinator.with_charge(
            user_id,
            OperationKind.STORY_SEGMENT,
            None,
            work,
            reference_id=request_id,
            metadata={"model": self.model}
        )

    def narrate(
        self,
        user_id: str,
        segment_id: str,
        text: str,
        voice: str = "alloy"
    ) -> ChargeResult:
        """Narrate a story segment; priced by the segment's word count.

        The segment id is the reference id, so narrating the same segment
        again after a timeout is never charged twice.
        """
        def work() -> GeneratedArtifact:
            response = self.client.audio.speech.create(
                model=self.tts_model,
                voice=voice,
                input=text
            )
            return GeneratedArtifact(
                id=segment_id,
                payload=response.content,
                metadata={"voice": voice, "model": self.tts_model}
            )

        return self.coordinator.with_charge(
            user_id,
            OperationKind.AUDIO,
            {"text": text},
            work,
            reference_id=segment_id,
            metadata={"voice": voice}
        )
