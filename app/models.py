from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    type: Literal["all", "brand", "generic"] = "all"
    limit: int = Field(default=20, ge=0)

    @field_validator("query")
    @classmethod
    def strip_query(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("Search query is required")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, value):
        return value.lower() if isinstance(value, str) else value


class VerifyRequest(BaseModel):
    nafdac_number: str = Field(min_length=1)


class Ingredient(BaseModel):
    name: str
    amount: Optional[str] = None


class DrugRecord(BaseModel):
    id: str
    type: Literal["brand", "generic"]
    brand_name: Optional[str] = None
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    nafdac_number: Optional[str] = None
    pack_size: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    is_verified: bool = True
    source: str = "emdex"
    raw_data: Optional[dict] = None


class DrugDetails(DrugRecord):
    route: Optional[str] = None
    therapeutic_class: Optional[str] = None
    storage: Optional[str] = None
    last_updated: Optional[str] = None
    pack_sizes: List[str] = []
    active_ingredients: List[Ingredient] = []
    indications: List[str] = []
    contraindications: List[str] = []
    side_effects: List[str] = []
    warnings: List[str] = []
    similar_drugs: List[DrugRecord] = []
    brand_alternatives: List[DrugRecord] = []


class Envelope(BaseModel):
    """Upstream payload tagged with the envelope shape it arrived in."""

    shape: Literal["data", "results", "brands", "generics", "list", "unknown"]
    items: List[Any] = []
