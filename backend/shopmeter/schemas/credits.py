"""Pydantic schemas for credit packages"""
from pydantic import BaseModel, model_validator
from typing import Optional


class PurchaseCreditsRequest(BaseModel):
    package_id: Optional[int] = None
    package_name: Optional[str] = None
    external_transaction_id: str
    email: Optional[str] = None

    @model_validator(mode="after")
    def check_package(self):
        if self.package_id is None and not self.package_name:
            raise ValueError("package_id or package_name is required")
        return self

    @property
    def package_ref(self):
        return self.package_id if self.package_id is not None else self.package_name
