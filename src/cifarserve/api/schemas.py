"""Pydantic response schemas for the cifarserve API.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class ClassProbability(CamelModel):
    """A single class with its score."""

    class_name: str = Field(alias="class")
    probability: float
    percentage: str = Field(description="Probability x 100, two decimals")


class ClassificationResult(CamelModel):
    predicted_class: str
    confidence: float = Field(description="Top probability rounded to 4 decimals")
    confidence_percentage: str
    all_predictions: list[ClassProbability] = Field(description="Top predictions, highest first")


class OriginalImage(CamelModel):
    filename: str
    size: int
    mimetype: str
    dimensions: str = Field(description="Decoded size as WxH")


class ProcessingInfo(CamelModel):
    time_ms: int
    model_input_size: str = "32x32x3"
    normalization: str = "Range [-1, 1]"


class ClassificationMetadata(CamelModel):
    original_image: OriginalImage
    processing: ProcessingInfo


class ClassifyResponse(CamelModel):
    """Response for the classification endpoint."""

    success: bool = True
    result: ClassificationResult
    metadata: ClassificationMetadata
    timestamp: str


class ModelDetails(CamelModel):
    type: str = "CIFAR-10 Image Classifier"
    input_shape: list[int]
    output_classes: int
    normalization: str
    supported_formats: list[str]


class ModelInfoResponse(CamelModel):
    """Response for the model information endpoint."""

    model_loaded: bool
    classes: list[str]
    model_info: ModelDetails


class HealthResponse(CamelModel):
    """Health check response."""

    status: str = "healthy"
    timestamp: str
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int
    rejected_requests: int


class ApiDescription(BaseModel):
    message: str
    version: str
    endpoints: dict[str, str]


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    timestamp: str
