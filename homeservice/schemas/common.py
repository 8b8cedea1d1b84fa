from typing import Generic, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

class Result(BaseModel, Generic[T]):
    """Sobre de respuesta común a todos los comandos."""
    model_config = ConfigDict(populate_by_name=True)

    is_success: bool = Field(..., alias="isSuccess")
    data: Optional[T] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data=None, message: Optional[str] = None):
        return cls(is_success=True, data=data, message=message)

    @classmethod
    def fail(cls, message: str):
        return cls(is_success=False, message=message)
