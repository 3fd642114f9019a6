"""Secret materialization."""

from .materializer import SecretMaterializer

__all__ = ["SecretMaterializer"]
