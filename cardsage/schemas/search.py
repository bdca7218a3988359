"""Schemas for the search endpoint."""

from pydantic import BaseModel, Field


class SearchHitResponse(BaseModel):
    """One ranked snippet from the card index."""

    id: int | None = Field(None, description="Card id, when the index document carries one.")
    score: float = Field(..., description="Backend relevance score; list order is the backend's ranking.")
    text: str = Field(..., description="Matched text chunk.")

    model_config = {
        "json_schema_extra": {
            "examples": [{"id": 46986414, "score": 12.7, "text": "Dark Magician. The ultimate wizard..."}]
        }
    }
