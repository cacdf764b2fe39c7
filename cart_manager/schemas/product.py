from pydantic import BaseModel, AliasChoices, Field
from typing import Optional


class Product(BaseModel):
    """Товар в представлении каталога (только чтение)"""

    id: str
    name: str
    price: float
    stock: int = 0
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_url", "imageUrl")
    )

    class Config:
        from_attributes = True
        extra = "ignore"
