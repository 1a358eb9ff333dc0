from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class VideoGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    source_image_url: str = Field(min_length=1)
    model: str = "1.3b"
    lora_url: str | None = None
    frames: int = 33
    negative_prompt: str = ""
    lora_strength_clip: float = 1.0
    lora_strength_model: float = 1.0
    aspect_ratio: str = "auto"
    resolution: str = "480p"
    sample_steps: int = 20
    sample_guide_scale: float = 5.0
    seed: int | None = None
    sample_shift: float = 8
    fast_mode: Literal["Fast", "Balanced", "Quality"] = "Balanced"

    class Config:
        json_schema_extra = {
            "example": {
                "prompt": "A lighthouse at dusk, waves rolling in slowly",
                "source_image_url": "https://example.com/uploads/lighthouse.png",
                "frames": 33,
                "resolution": "480p",
                "fast_mode": "Balanced",
            }
        }

    @field_validator("prompt", "source_image_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    def parameters(self) -> dict[str, Any]:
        """Style/model knobs without the prompt and source image."""
        return self.model_dump(exclude={"prompt", "source_image_url"})

    def to_payload(self) -> dict[str, Any]:
        """Body for the job creation call."""
        return {
            "input": {
                **self.parameters(),
                "prompt": self.prompt,
                "image_url": self.source_image_url,
            }
        }


__all__ = ["VideoGenerationRequest"]
