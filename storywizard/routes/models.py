"""Pydantic request models for API endpoints.

Ids are optional at the model level so a missing id is a 400 from the
handler rather than a 422 from validation.
"""

from pydantic import BaseModel


class StoryCompileBody(BaseModel):
    sessionId: str | None = None
    storyOutputTypeId: str | None = None


class StoryTextCompileBody(BaseModel):
    sessionId: str | None = None


class SynopsisBody(BaseModel):
    force: bool = False


class StorybookImagesBody(BaseModel):
    storyId: str | None = None
    storybookId: str | None = None
    forceRegenerate: bool = False
    pageId: str | None = None
    imageStylePrompt: str | None = None
    regressionTag: str | None = None
    targetWidthPx: int | None = None
    targetHeightPx: int | None = None


class ExemplarsBody(BaseModel):
    storyId: str | None = None
    storybookId: str | None = None
    forceRegenerate: bool = False


class PageImageBody(BaseModel):
    storyId: str | None = None
    storybookId: str | None = None
    pageId: str | None = None
    forceRegenerate: bool = False
    regressionTag: str | None = None
    imageStylePrompt: str | None = None
    targetWidthPx: int | None = None
    targetHeightPx: int | None = None
    aspectRatio: str | None = None


class Address(BaseModel):
    name: str
    line1: str
    line2: str | None = None
    city: str
    state: str | None = None
    postalCode: str
    country: str = "GB"
    email: str
    phone: str | None = None


class PrintOrderBody(BaseModel):
    billingAddress: Address | None = None
    paymentMethod: str = "ACCOUNT"
