"""Visual engine: research -> render for new infographics, single-stage edit for revisions."""

from typing import Any

from pydantic import BaseModel, Field, model_validator

from visionstudio.core.exceptions import BadRequestError, NotFoundError
from visionstudio.services.gateway import AIGateway, InlineImage
from visionstudio.storage.base import get_storage
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import Account
from visionstudio.workflows.pipeline import ActionPlan, ArtifactDraft, Stage, StageOutput

FEATURE = "visual_engine"


class InfographicRequest(BaseModel):
    topic: str = Field(min_length=1, max_length=500)
    level: str = "General"
    style: str = "Default"
    language: str = "English"
    aspect_ratio: str = "16:9"


class InfographicEditRequest(BaseModel):
    instruction: str = Field(min_length=1, max_length=2000)
    artifact_id: str | None = None
    image_base64: str | None = None

    @model_validator(mode="after")
    def one_source(self) -> "InfographicEditRequest":
        if bool(self.artifact_id) == bool(self.image_base64):
            raise ValueError("Provide exactly one of artifact_id or image_base64")
        return self


def plan_infographic(gateway: AIGateway, body: InfographicRequest) -> ActionPlan:
    async def research(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        result = await gateway.research(
            inputs["topic"],
            level=inputs["level"],
            style=inputs["style"],
            language=inputs["language"],
            aspect_ratio=inputs["aspect_ratio"],
        )
        return StageOutput(
            payload={
                "image_prompt": result.image_prompt,
                "facts": result.facts,
                "sources": [s.model_dump() for s in result.sources],
            },
            cost=result.usage,
        )

    async def render(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        result = await gateway.render(outputs["research"]["image_prompt"], aspect_ratio=inputs["aspect_ratio"])
        return StageOutput(payload={"data": result.data, "mime_type": result.mime_type}, cost=result.usage)

    def artifact(outputs: dict) -> ArtifactDraft:
        return ArtifactDraft(
            data=outputs["render"]["data"],
            content_type=outputs["render"]["mime_type"],
            prompt=body.topic,
            metadata={
                "level": body.level,
                "style": body.style,
                "language": body.language,
                "aspect_ratio": body.aspect_ratio,
                "facts": outputs["research"]["facts"],
                "sources": outputs["research"]["sources"],
            },
        )

    return ActionPlan(
        feature=FEATURE,
        label=FEATURE,
        stages=[Stage("research", research), Stage("render", render)],
        inputs=body.model_dump(),
        artifact=artifact,
    )


async def load_owned_image(account: Account, artifact_id: str) -> InlineImage:
    """Read back an artifact's bytes; other accounts' artifacts look missing."""
    source = await get_stores().artifacts.get(artifact_id)
    if not source or source.account_id != account.id:
        raise NotFoundError("Image not found")
    try:
        data = await get_storage().get(source.key)
    except FileNotFoundError as e:
        raise NotFoundError("Image not found") from e
    return InlineImage(data=data, mime_type=source.content_type)


def plan_infographic_edit(gateway: AIGateway, body: InfographicEditRequest) -> ActionPlan:
    async def prepare(account: Account, inputs: dict[str, Any]) -> None:
        if body.artifact_id:
            inputs["image"] = await load_owned_image(account, body.artifact_id)
        else:
            inputs["image"] = InlineImage.from_base64(body.image_base64)

    async def edit(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        if "image" not in inputs:
            raise BadRequestError("No source image")
        result = await gateway.edit(inputs["image"], inputs["instruction"])
        return StageOutput(payload={"data": result.data, "mime_type": result.mime_type}, cost=result.usage)

    def artifact(outputs: dict) -> ArtifactDraft:
        metadata = {"edit_of": body.artifact_id} if body.artifact_id else {}
        return ArtifactDraft(
            data=outputs["edit"]["data"],
            content_type=outputs["edit"]["mime_type"],
            prompt=body.instruction,
            metadata=metadata,
        )

    return ActionPlan(
        feature=FEATURE,
        label=FEATURE,
        stages=[Stage("edit", edit)],
        inputs={"instruction": body.instruction},
        prepare=prepare,
        artifact=artifact,
    )
