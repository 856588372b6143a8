from fastapi import Request

from services.runtime import TradingRuntime


def get_runtime(request: Request) -> TradingRuntime:
    """The runtime built in the application lifespan."""
    return request.app.state.runtime
