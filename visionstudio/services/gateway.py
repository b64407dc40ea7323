"""Gemini gateway: one coroutine per pipeline stage type, each reporting its usage."""

import base64
import binascii
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Literal

from google import genai
from google.genai import errors, types
from pydantic import BaseModel, Field

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import BadRequestError
from visionstudio.core.logging import get_logger

log = get_logger(__name__)

_DATA_URL_RE = re.compile(r"^data:([\w/+.-]+);base64,")

ErrorKind = Literal["rate_limited", "access_denied", "unavailable", "invalid_response", "bad_request"]


class GatewayError(Exception):
    """Gateway call failed; `kind` is what the pipeline reports as the stage failure reason."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind
        super().__init__(self.message)


class Source(BaseModel):
    title: str
    url: str


class ResearchResult(BaseModel):
    image_prompt: str
    facts: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    usage: int = 0


class ImageResult(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    usage: int = 0


class TextResult(BaseModel):
    text: str
    usage: int = 0


class InlineImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, value: str, mime_type: str | None = None) -> "InlineImage":
        """Accept raw base64 or a `data:<mime>;base64,` URL."""
        match = _DATA_URL_RE.match(value)
        if match:
            mime_type = mime_type or match.group(1)
            value = value[match.end():]
        try:
            data = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise BadRequestError("Invalid base64 image data") from e
        if not data:
            raise BadRequestError("Empty image data")
        return cls(data=data, mime_type=mime_type or "image/png")


class HistoryTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class AIGateway(ABC):
    @abstractmethod
    async def research(
        self, topic: str, *, level: str, style: str, language: str, aspect_ratio: str
    ) -> ResearchResult:
        ...

    @abstractmethod
    async def render(self, prompt: str, *, aspect_ratio: str) -> ImageResult:
        ...

    @abstractmethod
    async def edit(self, image: InlineImage, instruction: str) -> ImageResult:
        ...

    @abstractmethod
    async def compose(self, prompt: str, images: list[InlineImage]) -> ImageResult:
        ...

    @abstractmethod
    async def chat(
        self, model: str, history: list[HistoryTurn], message: str, attachments: list[InlineImage]
    ) -> TextResult:
        ...

    @abstractmethod
    async def title(self, text: str) -> TextResult:
        ...


_LEVELS = {
    "Elementary": "Target audience: elementary school. Bright, simple visuals with minimal text.",
    "High School": "Target audience: high school. Clean textbook diagrams with clear labels.",
    "College": "Target audience: university. Data-rich academic detail.",
    "Expert": "Target audience: industry experts. Dense technical schematic detail.",
}
_STYLES = {
    "Minimalist": "Aesthetic: flat minimalist vector art with a limited palette.",
    "Realistic": "Aesthetic: photorealistic composite with cinematic lighting.",
    "Cartoon": "Aesthetic: vibrant educational comic.",
    "Vintage": "Aesthetic: 19th century scientific lithograph.",
    "Futuristic": "Aesthetic: glowing holographic HUD on a dark background.",
    "3D Render": "Aesthetic: isometric 3D render with studio lighting.",
    "Sketch": "Aesthetic: ink notebook sketch with handwritten annotations.",
}
_FACTS_RE = re.compile(r"FACTS:\s*(.*?)(?=IMAGE_PROMPT:|$)", re.IGNORECASE | re.DOTALL)
_PROMPT_RE = re.compile(r"IMAGE_PROMPT:\s*(.*)$", re.IGNORECASE | re.DOTALL)

CHAT_SYSTEM_INSTRUCTION = (
    "You are a warm, patient assistant for people new to AI. Answer in the language the user writes in, "
    "avoid unnecessary technical detail, and give numbered step-by-step help when the user is stuck."
)


def parse_research_text(text: str, fallback_prompt: str) -> tuple[list[str], str]:
    """Split a FACTS / IMAGE_PROMPT response into (up to three facts, image prompt)."""
    facts_match = _FACTS_RE.search(text)
    facts = []
    if facts_match:
        for line in facts_match.group(1).strip().splitlines():
            fact = re.sub(r"^-\s*", "", line).strip()
            if fact:
                facts.append(fact)
    prompt_match = _PROMPT_RE.search(text)
    image_prompt = prompt_match.group(1).strip() if prompt_match else ""
    return facts[:3], image_prompt or fallback_prompt


def classify_api_error(exc: errors.APIError) -> GatewayError:
    code = getattr(exc, "code", None)
    if code == 429:
        kind = "rate_limited"
    elif code in (401, 403):
        kind = "access_denied"
    elif code is not None and 400 <= code < 500:
        kind = "bad_request"
    else:
        kind = "unavailable"
    return GatewayError(kind, getattr(exc, "message", None) or str(exc))


def _usage(response: types.GenerateContentResponse) -> int:
    meta = response.usage_metadata
    if meta is None or meta.total_token_count is None:
        return 0
    return meta.total_token_count


def _first_image(response: types.GenerateContentResponse) -> ImageResult:
    candidates = response.candidates or []
    if candidates and candidates[0].content and candidates[0].content.parts:
        for part in candidates[0].content.parts:
            if part.inline_data and part.inline_data.data:
                return ImageResult(
                    data=part.inline_data.data,
                    mime_type=part.inline_data.mime_type or "image/png",
                    usage=_usage(response),
                )
    raise GatewayError("invalid_response", "No image in model response")


class GeminiGateway(AIGateway):
    def __init__(self, api_key: str | None = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.client = genai.Client(api_key=api_key or settings.gemini_api_key)

    async def _generate(self, model: str, contents, config: types.GenerateContentConfig | None = None):
        try:
            return await self.client.aio.models.generate_content(model=model, contents=contents, config=config)
        except errors.APIError as e:
            log.warning("gateway_api_error", model=model, code=e.code, status=e.status)
            raise classify_api_error(e) from e

    async def research(
        self, topic: str, *, level: str, style: str, language: str, aspect_ratio: str
    ) -> ResearchResult:
        level_instr = _LEVELS.get(level, "Target audience: general public.")
        style_instr = _STYLES.get(style, "Aesthetic: clean, modern digital illustration.")
        prompt = (
            f'Research the topic "{topic}" and plan an infographic.\n'
            f"{level_instr}\n{style_instr}\n"
            f"Output language: {language}. Aspect ratio: {aspect_ratio}.\n"
            "Respond exactly as:\nFACTS:\n- fact\n- fact\n- fact\n\nIMAGE_PROMPT:\n"
            f"[detailed image prompt; all text inside the image must be written in {language}]"
        )
        response = await self._generate(
            self.settings.research_model,
            prompt,
            types.GenerateContentConfig(tools=[types.Tool(google_search=types.GoogleSearch())]),
        )
        fallback = (
            f"Create a detailed infographic about {topic}. {level_instr} {style_instr} "
            f"Layout: {aspect_ratio}. All text labels inside the image must be in {language}."
        )
        facts, image_prompt = parse_research_text(response.text or "", fallback)
        sources: dict[str, Source] = {}
        candidates = response.candidates or []
        grounding = candidates[0].grounding_metadata if candidates else None
        for chunk in (grounding.grounding_chunks or []) if grounding else []:
            if chunk.web and chunk.web.uri and chunk.web.title:
                sources.setdefault(chunk.web.uri, Source(title=chunk.web.title, url=chunk.web.uri))
        return ResearchResult(
            image_prompt=image_prompt,
            facts=facts,
            sources=list(sources.values()),
            usage=_usage(response),
        )

    async def render(self, prompt: str, *, aspect_ratio: str) -> ImageResult:
        response = await self._generate(
            self.settings.image_model,
            prompt,
            types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        return _first_image(response)

    async def edit(self, image: InlineImage, instruction: str) -> ImageResult:
        contents = [
            types.Part.from_bytes(data=image.data, mime_type=image.mime_type),
            types.Part(text=instruction),
        ]
        response = await self._generate(
            self.settings.image_model,
            contents,
            types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        return _first_image(response)

    async def compose(self, prompt: str, images: list[InlineImage]) -> ImageResult:
        contents = [types.Part(text=prompt)]
        contents.extend(types.Part.from_bytes(data=i.data, mime_type=i.mime_type) for i in images)
        response = await self._generate(self.settings.smart_image_model, contents)
        return _first_image(response)

    async def chat(
        self, model: str, history: list[HistoryTurn], message: str, attachments: list[InlineImage]
    ) -> TextResult:
        contents = [
            types.Content(role="model" if turn.role == "assistant" else "user", parts=[types.Part(text=turn.content)])
            for turn in history
        ]
        parts = [types.Part(text=message)]
        parts.extend(types.Part.from_bytes(data=a.data, mime_type=a.mime_type) for a in attachments)
        contents.append(types.Content(role="user", parts=parts))
        response = await self._generate(
            model,
            contents,
            types.GenerateContentConfig(system_instruction=CHAT_SYSTEM_INSTRUCTION),
        )
        return TextResult(text=response.text or "", usage=_usage(response))

    async def title(self, text: str) -> TextResult:
        prompt = (
            "Create a very short descriptive title (max 5 words, same language as the input) "
            f'for this message. No quotes or formatting.\n\nMessage: "{text}"\n\nTitle:'
        )
        response = await self._generate(self.settings.title_model, prompt)
        title = (response.text or "").strip().replace('"', "") or text[:20]
        return TextResult(text=title, usage=_usage(response))


@lru_cache
def get_gateway() -> AIGateway:
    return GeminiGateway()
