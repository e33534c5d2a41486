"""Shared FastAPI dependencies."""
from fastapi import Request

from mealplanner_billing.container import Container


def get_services(request: Request) -> Container:
    """The service container attached to the app at startup."""
    return request.app.state.container
