"""Customer address adapters."""

from marketplace.addresses.fake_adapter import InMemoryAddressBook
from marketplace.addresses.port import AddressBook

__all__ = ["AddressBook", "InMemoryAddressBook"]
