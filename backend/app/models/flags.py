from typing import Optional

from pydantic import BaseModel, Field


class FlagOverrides(BaseModel):
    """Sparse overrides: None means "not set at this level"."""
    enable_linkedin: Optional[bool] = Field(None, alias="enableLinkedIn")
    enable_whatsapp: Optional[bool] = Field(None, alias="enableWhatsApp")
    enable_mail: Optional[bool] = Field(None, alias="enableMail")
    enable_async_mode: Optional[bool] = Field(None, alias="enableAsyncMode")

    class Config:
        populate_by_name = True


class FeatureFlags(BaseModel):
    enable_linkedin: bool = False
    enable_whatsapp: bool = False
    enable_mail: bool = True
    enable_async_mode: bool = False

    class Config:
        frozen = True

    def merged(self, overrides: Optional[FlagOverrides]) -> "FeatureFlags":
        if overrides is None:
            return self
        updates = {k: v for k, v in overrides.model_dump().items() if v is not None}
        return self.model_copy(update=updates)

    @property
    def extension_enabled(self) -> bool:
        return self.enable_linkedin or self.enable_whatsapp
