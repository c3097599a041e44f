"""Anthropic API integration for reading invoice images.

The model's reply is returned untouched; ``billscan.pipeline.parser`` is the
only component that interprets it.
"""

import base64
import time
from pathlib import Path

from anthropic import AsyncAnthropic
from anthropic.types import (
    CacheControlEphemeralParam,
    MessageParam,
    TextBlockParam,
)
from jinja2 import Environment, FileSystemLoader, select_autoescape
from loguru import logger
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from billscan.errors import (
    ExtractionError,
    ExtractionIncompleteError,
    ExtractionRefusedError,
    UnsupportedImageError,
)
from billscan.models import ExtractionResult

SUPPORTED_MEDIA_TYPES = {
    "image/jpeg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "image/png": "image/png",
    "image/webp": "image/webp",
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def check_image(image_bytes: bytes, media_type: str) -> str:
    """Return the canonical media type, or raise if the image cannot be sent.

    Raises:
        UnsupportedImageError: Empty, oversized or unsupported image
    """
    canonical = SUPPORTED_MEDIA_TYPES.get(media_type.lower())
    if canonical is None:
        raise UnsupportedImageError(
            f"Unsupported image type {media_type!r}; use JPEG, PNG or WEBP"
        )
    if not image_bytes:
        raise UnsupportedImageError("Image is empty")
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise UnsupportedImageError(
            f"Image is {len(image_bytes) / (1024 * 1024):.1f} MB; the limit is 5 MB"
        )
    return canonical


class AnthropicExtractor:
    """
    Anthropic-powered invoice reader.

    Sends the invoice image with a fixed prompt asking for vendor, invoice and
    product fields as JSON, and hands back the raw reply text.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5",
        max_tokens: int = 8192,
        temperature: float = 0.1,
        prompts_dir: str | None = None,
    ) -> None:
        """
        Initialize the Anthropic extractor.

        Args:
            api_key: Anthropic API key
            model: Model to use (default: claude-haiku-4-5)
            max_tokens: Maximum tokens for response (default: 8192)
            temperature: Sampling temperature (default: 0.1)
            prompts_dir: Directory containing Jinja2 templates (default: ./prompts)
        """
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        # Set up Jinja2 environment for prompt templates
        if prompts_dir is None:
            # Default to prompts/ directory in project root
            project_root = Path(__file__).parent.parent.parent.parent
            prompts_dir = str(project_root / "prompts")

        self.jinja_env = Environment(
            loader=FileSystemLoader(prompts_dir),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _render_prompts(self) -> tuple[str, str]:
        """
        Render system and user prompts from Jinja2 templates.

        Returns:
            Tuple of (system_prompt, user_prompt)
        """
        system_template = self.jinja_env.get_template("extractor_system.jinja2")
        user_template = self.jinja_env.get_template("extractor_user.jinja2")

        return system_template.render(), user_template.render()

    @retry(
        retry=retry_if_not_exception_type(ExtractionError),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def extract_invoice_text(
        self,
        image_bytes: bytes,
        media_type: str = "image/jpeg",
        max_tokens: int | None = None,
    ) -> ExtractionResult:
        """
        Ask the model to read an invoice image.

        Args:
            image_bytes: Raw image content
            media_type: MIME type of the image
            max_tokens: Override default max_tokens if specified

        Returns:
            ExtractionResult containing the raw reply text and usage metadata

        Raises:
            UnsupportedImageError: If the image type or size is not accepted
            ExtractionRefusedError: If the model refuses the request
            ExtractionIncompleteError: If response is truncated
            Exception: For other API errors (with retry)
        """
        canonical_type = check_image(image_bytes, media_type)
        start_time = time.time()

        system_prompt, user_prompt = self._render_prompts()

        messages: list[MessageParam] = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": canonical_type,
                            "data": base64.standard_b64encode(image_bytes).decode("ascii"),
                        },
                    },
                    {"type": "text", "text": user_prompt},
                ],
            }
        ]

        # Call Anthropic API with prompt caching on the fixed system prompt
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
            system=[
                TextBlockParam(
                    type="text",
                    text=system_prompt,
                    cache_control=CacheControlEphemeralParam(type="ephemeral"),
                )
            ],
            messages=messages,
        )

        # Handle edge cases based on stop_reason
        if response.stop_reason == "refusal":
            raise ExtractionRefusedError("Model refused to process the request")

        if response.stop_reason == "max_tokens":
            raise ExtractionIncompleteError(
                "Response truncated due to token limit. Try increasing max_tokens."
            )

        raw_text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        processing_time = time.time() - start_time
        logger.debug(
            "Extracted {} characters in {:.2f}s ({} input / {} output tokens)",
            len(raw_text),
            processing_time,
            response.usage.input_tokens,
            response.usage.output_tokens,
        )

        return ExtractionResult(
            raw_text=raw_text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
            cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            processing_time=processing_time,
        )
