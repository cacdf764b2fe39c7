import uuid
from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint, UniqueConstraint, func
from ..database import Base


class CartItem(Base):
    """Позиция корзины авторизованного пользователя"""

    __tablename__ = "cart_items"
    __table_args__ = (
        # Одна строка на пару (пользователь, товар)
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
