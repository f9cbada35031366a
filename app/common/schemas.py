"""
Shared pydantic types
"""
from decimal import Decimal
from typing import Annotated

from pydantic import PlainSerializer

from app.modules.purchases.ledger import present

# Exact Decimal in Python, rounded only when rendered to JSON
Money = Annotated[Decimal, PlainSerializer(lambda v: str(present(v)), return_type=str, when_used="json")]
