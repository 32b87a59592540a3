"""
Service Factory
===============

Factory for creating generation service instances.
"""

import logging
from typing import Optional, List, Dict, Type

from .base import BaseGenerationService

logger = logging.getLogger(__name__)

# Registry of available services
_SERVICES: Dict[str, Type[BaseGenerationService]] = {}


def register_service(name: str):
    """Decorator to register a service class."""
    def decorator(cls: Type[BaseGenerationService]):
        _SERVICES[name.lower()] = cls
        return cls
    return decorator


def get_service(
    name: str,
    api_key: Optional[str] = None,
    **kwargs,
) -> BaseGenerationService:
    """
    Get a generation service instance.

    Args:
        name: Service name ('google' or 'fal')
        api_key: Optional API key (otherwise read from environment)
        **kwargs: Additional service-specific arguments

    Raises:
        ValueError: If service name is not recognized
    """
    name_lower = name.lower()

    if name_lower not in _SERVICES:
        # Importing the module registers the class
        if name_lower == "google":
            from . import google  # noqa: F401
        elif name_lower == "fal":
            from . import fal  # noqa: F401
        else:
            raise ValueError(f"Unknown service: {name}")

    service_class = _SERVICES.get(name_lower)
    if service_class is None:
        raise ValueError(f"Service '{name}' not registered")

    logger.debug(f"Creating {service_class.__name__}")
    return service_class(api_key=api_key, **kwargs)


def list_services() -> List[str]:
    """List all available service names."""
    from . import fal, google  # noqa: F401

    return sorted(_SERVICES.keys())
