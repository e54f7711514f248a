from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

from .models import Contact

SelectionListener = Callable[[Optional[str], Optional[str]], None]
RosterListener = Callable[["ContactStore"], None]


def _remover(listeners: list, listener: Any) -> Callable[[], None]:
    def remove() -> None:
        try:
            listeners.remove(listener)
        except ValueError:
            return

    return remove


class ContactStore:
    """Session-long contact roster plus the selected conversation id."""

    def __init__(self, contacts: Iterable[Contact] = ()) -> None:
        self._contacts: List[Contact] = list(contacts)
        self._selected_id: Optional[str] = None
        self._selection_listeners: List[SelectionListener] = []
        self._roster_listeners: List[RosterListener] = []

    @property
    def contacts(self) -> Tuple[Contact, ...]:
        return tuple(self._contacts)

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def selected_contact(self) -> Optional[Contact]:
        if self._selected_id is None:
            return None
        return self.get(self._selected_id)

    def get(self, contact_id: str) -> Optional[Contact]:
        for contact in self._contacts:
            if contact.id == contact_id:
                return contact
        return None

    def add_selection_listener(self, listener: SelectionListener) -> Callable[[], None]:
        """Register ``listener(previous_id, new_id)`` for selection changes."""

        self._selection_listeners.append(listener)
        return _remover(self._selection_listeners, listener)

    def add_listener(self, listener: RosterListener) -> Callable[[], None]:
        self._roster_listeners.append(listener)
        return _remover(self._roster_listeners, listener)

    def set_roster(self, contacts: Iterable[Contact]) -> None:
        # The selection survives even if the contact disappears from the roster.
        self._contacts = list(contacts)
        self._notify_roster()

    def select(self, contact_id: Optional[str]) -> bool:
        """Change the selection; returns ``False`` when it was already current."""

        if contact_id == self._selected_id:
            return False
        previous = self._selected_id
        self._selected_id = contact_id
        for listener in list(self._selection_listeners):
            listener(previous, contact_id)
        return True

    def update_contact(self, contact_id: str, **fields: Any) -> bool:
        for index, contact in enumerate(self._contacts):
            if contact.id == contact_id:
                self._contacts[index] = contact.updated(**fields)
                self._notify_roster()
                return True
        return False

    def filtered_by(self, query: str) -> Iterator[Contact]:
        needle = query.casefold()
        return (contact for contact in self._contacts if needle in contact.display_name.casefold())

    def _notify_roster(self) -> None:
        for listener in list(self._roster_listeners):
            listener(self)
