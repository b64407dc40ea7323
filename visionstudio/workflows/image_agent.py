"""Smart tools (HD generator, stylist, one-click beautify): one compose stage over reference images."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from visionstudio.core.capabilities import max_attachments
from visionstudio.core.exceptions import BadRequestError
from visionstudio.services.gateway import AIGateway, InlineImage
from visionstudio.stores.records import Account
from visionstudio.workflows.pipeline import ActionPlan, ArtifactDraft, Stage, StageOutput

FEATURE = "smart_image"

Tool = Literal["hd_generator", "stylist", "beautify"]


class SmartImageRequest(BaseModel):
    tool: Tool = "hd_generator"
    prompt: str = Field(min_length=1, max_length=4000)
    images: list[str] = Field(default_factory=list)  # base64 or data URLs


def plan_smart_image(gateway: AIGateway, body: SmartImageRequest) -> ActionPlan:
    async def prepare(account: Account, inputs: dict[str, Any]) -> None:
        limit = max_attachments(account.role)
        if len(body.images) > limit:
            raise BadRequestError(f"At most {limit} reference image(s) allowed for role {account.role}")
        inputs["images"] = [InlineImage.from_base64(i) for i in body.images]

    async def compose(inputs: dict[str, Any], outputs: dict) -> StageOutput:
        result = await gateway.compose(inputs["prompt"], inputs.get("images", []))
        return StageOutput(payload={"data": result.data, "mime_type": result.mime_type}, cost=result.usage)

    def artifact(outputs: dict) -> ArtifactDraft:
        return ArtifactDraft(
            data=outputs["compose"]["data"],
            content_type=outputs["compose"]["mime_type"],
            prompt=body.prompt,
            metadata={"tool": body.tool, "reference_images": len(body.images)},
        )

    return ActionPlan(
        feature=FEATURE,
        label=FEATURE,
        stages=[Stage("compose", compose)],
        inputs={"prompt": body.prompt, "tool": body.tool},
        prepare=prepare,
        artifact=artifact,
    )
