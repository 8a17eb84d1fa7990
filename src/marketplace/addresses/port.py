"""Address book port — ownership checks for shipping address references."""

from abc import ABC, abstractmethod


class AddressBook(ABC):
    @abstractmethod
    def owns(self, customer_ref: str, address_ref: str) -> bool:
        """True when ``address_ref`` belongs to ``customer_ref``."""
        ...
