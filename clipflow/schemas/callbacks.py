from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ProviderCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_ref: str = Field(min_length=1, validation_alias=AliasChoices("external_ref", "externalRef"))
    status: Literal["done", "error"]
    output_ref: str | None = Field(default=None, validation_alias=AliasChoices("output_ref", "outputRef"))
    error_detail: str | None = Field(default=None, validation_alias=AliasChoices("error_detail", "errorDetail"))


class CallbackAck(BaseModel):
    accepted: bool = True
    matched: bool
    transitioned: bool
    job_id: str | None = None
