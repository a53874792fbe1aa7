from fastapi import Request

from portfolio_api.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """The container built in the app lifespan."""
    return request.app.state.container
