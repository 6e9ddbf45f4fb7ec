from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "function", "tool"]
    content: Union[str, List[Dict[str, Any]], None] = None
    name: Optional[str] = None
    function_call: Optional[Dict[str, Any]] = None

    def upstream(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    model: str = Field(min_length=1)
    messages: List[ChatMessage] = Field(min_length=1)
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    pro_models_enabled: bool = Field(default=False, alias="proModelsEnabled")
    beta_models_enabled: bool = Field(default=False, alias="betaModelsEnabled")
    study_mode: bool = Field(default=False, alias="studyMode")
    functions_enabled: bool = Field(default=False, alias="functionsEnabled")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    top_p: Optional[float] = Field(default=None, alias="topP")

    def sampling(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in {
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "top_p": self.top_p,
            }.items()
            if value is not None
        }


class ImageGenerationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    n: int = Field(default=1, ge=1, le=4)
    size: str = "1024x1024"
    quality: Literal["standard", "hd"] = "standard"
    response_format: Literal["url", "b64_json"] = "url"
    style: Literal["vivid", "natural"] = "vivid"
    user: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("prompt must not be blank")
        return stripped


class ImageUploadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str = Field(min_length=1)
