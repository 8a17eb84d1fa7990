"""In-memory address book."""

from marketplace.addresses.port import AddressBook


class InMemoryAddressBook(AddressBook):
    def __init__(self) -> None:
        self._owners: dict[str, str] = {}

    def add(self, customer_ref: str, address_ref: str) -> None:
        self._owners[address_ref] = customer_ref

    def owns(self, customer_ref: str, address_ref: str) -> bool:
        return self._owners.get(address_ref) == customer_ref
