"""Scheduling schemas"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SlotOption(BaseModel):
    """One offered appointment window. start/end are naive UTC."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int
    start: datetime
    end: datetime
    label: str
