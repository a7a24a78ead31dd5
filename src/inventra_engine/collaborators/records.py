"""Record shapes accepted back from the structuring collaborator."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

Shape = Literal["products", "sales"]


class ProductRecord(BaseModel):
    """A product as extracted from a document. Every field is optional; absent means not detected."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    stock: Optional[StrictInt] = Field(default=None, ge=0)
    minStock: Optional[StrictInt] = Field(default=None, ge=0)
    supplier: Optional[str] = None


class SaleRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    productId: Optional[str] = None
    productName: Optional[str] = None
    quantity: Optional[StrictInt] = Field(default=None, ge=0)
    price: Optional[float] = Field(default=None, ge=0)
    total: Optional[float] = Field(default=None, ge=0)
    date: Optional[str] = None
    customer: Optional[str] = None


RECORD_TYPES: dict[str, type[BaseModel]] = {"products": ProductRecord, "sales": SaleRecord}


class RejectedRecord(BaseModel):
    index: int
    error: str


class StructuredBatch(BaseModel):
    shape: Shape
    records: list[dict[str, Any]] = []
    rejected: list[RejectedRecord] = []
    notes: str = ""


def revalidate_records(shape: str, payload: Any) -> StructuredBatch:
    """Re-parse untrusted structuring output, keeping valid records and reporting the rest."""
    if shape not in RECORD_TYPES:
        raise ValueError(f"Unknown record shape: {shape}")
    record_type = RECORD_TYPES[shape]

    items: Any = payload
    notes = ""
    if isinstance(payload, dict):
        items = payload.get(shape, [])
        notes = payload.get("notes") or ""
    if not isinstance(items, list):
        items = []

    batch = StructuredBatch(shape=shape, notes=str(notes))
    for index, item in enumerate(items):
        try:
            record = record_type.model_validate(item)
        except ValidationError as exc:
            batch.rejected.append(RejectedRecord(index=index, error=str(exc)))
            continue
        batch.records.append(record.model_dump(exclude_none=True))
    return batch
