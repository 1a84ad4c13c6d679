from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StatsResponse(BaseModel):
    """Counters shared by ``GET /stats`` and the ``stats`` broadcast."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    online_count: int
    searching_count: int
    active_session_count: int


class HealthResponse(StatsResponse):
    status: str = "healthy"
