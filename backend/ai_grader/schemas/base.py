"""camelCase API models.

The exam UI speaks camelCase (``resultId``, ``jobId``); Python stays
snake_case. Requests accept either spelling.
"""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies and computed responses (drain summaries, monitor stats)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelORMModel(CamelModel):
    """Responses built straight from a GradingJob row."""
    model_config = ConfigDict(from_attributes=True)
