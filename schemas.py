from pydantic import BaseModel, Field, model_validator
from typing import Any, Literal, Optional

CANCER = "Cancer"
NON_CANCER = "Non-cancer"

SUGGESTIONS = {
    CANCER: "Segera periksa ke dokter!",
    NON_CANCER: "Penyakit kanker tidak terdeteksi.",
}


class PredictionRecord(BaseModel):
    """Predictions collection schema
    Collection name: "predictions" (document key is ``id``)
    """
    id: str = Field(..., min_length=1, description="Random identifier, also the document key")
    result: Literal["Cancer", "Non-cancer"] = Field(..., description="Thresholded model output")
    suggestion: str = Field(..., description="Advice shown to the user, fixed per result")
    createdAt: str = Field(..., description="ISO timestamp when prediction was made")

    @model_validator(mode="after")
    def _suggestion_matches_result(self):
        if self.suggestion != SUGGESTIONS[self.result]:
            raise ValueError(f"suggestion does not match result {self.result!r}")
        return self

    def document(self) -> dict:
        """Fields stored under the record's id."""
        return self.model_dump(exclude={"id"})


class PredictResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str = "Model is predicted successfully"
    data: PredictionRecord


class HealthResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str = "Server is running smoothly"


class ErrorResponse(BaseModel):
    status: Literal["fail", "error"]
    message: str
    data: Optional[Any] = None
