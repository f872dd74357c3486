"""
Oracle response schemas.

The oracle answers with exactly one of three kinds, discriminated by
`responseType`. The orchestrator matches on the concrete class.
"""

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from buildloop.schemas.project import Modification, Plan, WireModel


class ChatResponse(WireModel):
    response_type: Literal["CHAT"] = "CHAT"
    message: str = Field(..., min_length=1)


class PlanResponse(WireModel):
    response_type: Literal["PLAN"] = "PLAN"
    plan: Plan


class ModifyCodeResponse(WireModel):
    response_type: Literal["MODIFY_CODE"] = "MODIFY_CODE"
    modification: Modification


OracleResponse = Annotated[
    Union[ChatResponse, PlanResponse, ModifyCodeResponse],
    Field(discriminator="response_type"),
]

oracle_response_adapter: TypeAdapter = TypeAdapter(OracleResponse)

# Older prompts asked for PROJECT_PLAN; both spellings mean the same kind
RESPONSE_TYPE_ALIASES = {
    "PROJECT_PLAN": "PLAN",
}
