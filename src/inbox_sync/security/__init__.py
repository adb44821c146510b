"""Secret handling for stored mailbox credentials."""

from .secrets import SecretCipher

__all__ = ["SecretCipher"]
