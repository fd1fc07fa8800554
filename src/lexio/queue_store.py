from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Callable, List, Optional, Tuple


@dataclass(frozen=True)
class QueueItem:
    id: str
    title: str
    content: str
    duration: Optional[float] = None


Listener = Callable[["QueueStore"], None]


class QueueStore:
    """Ordered listening queue with a current-position pointer.

    Insertion order is playback order and ids are unique. Mutations hold an
    internal lock; listeners run after it is released. ``current_index`` is
    -1 or a valid index after every operation; removing or reordering items
    keeps it on the same logical item where one still exists.
    """

    def __init__(self) -> None:
        self._items: List[QueueItem] = []
        self.current_index = -1
        self.play_intent = False
        self.repeat = False
        self.shuffle = False
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()


    @property
    def items(self) -> Tuple[QueueItem, ...]:
        with self._lock:
            return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _index_of(self, item_id: str) -> int:
        for i, it in enumerate(self._items):
            if it.id == item_id:
                return i
        return -1

    def is_present(self, item_id: str) -> bool:
        with self._lock:
            return self._index_of(item_id) != -1

    def current_item(self) -> Optional[QueueItem]:
        with self._lock:
            if 0 <= self.current_index < len(self._items):
                return self._items[self.current_index]
            return None

    def add(self, item: QueueItem) -> bool:
        with self._lock:
            if self._index_of(item.id) != -1:
                return False
            self._items.append(item)
        self._notify()
        return True

    def remove(self, item_id: str) -> bool:
        with self._lock:
            idx = self._index_of(item_id)
            if idx == -1:
                return False
            del self._items[idx]
            if not self._items:
                self.current_index = -1
            elif idx <= self.current_index:
                self.current_index = max(0, self.current_index - 1)
        self._notify()
        return True

    def clear(self) -> None:
        with self._lock:
            self._items = []
            self.current_index = -1
            self.play_intent = False
        self._notify()

    def reorder(self, from_index: int, to_index: int) -> None:
        with self._lock:
            n = len(self._items)
            if not (0 <= from_index < n and 0 <= to_index < n):
                raise IndexError(f"reorder indices out of range: {from_index} -> {to_index} (size {n})")
            if from_index == to_index:
                return
            moved = self._items.pop(from_index)
            self._items.insert(to_index, moved)

            cur = self.current_index
            if cur == from_index:
                self.current_index = to_index
            elif from_index < cur <= to_index:
                self.current_index = cur - 1
            elif to_index <= cur < from_index:
                self.current_index = cur + 1
        self._notify()

    def set_current_index(self, index: int) -> None:
        with self._lock:
            if not (-1 <= index < len(self._items)):
                raise IndexError(f"current index {index} out of range for queue of {len(self._items)}")
            self.current_index = index
        self._notify()

    def play_from(self, index: int) -> bool:
        with self._lock:
            if not (0 <= index < len(self._items)):
                return False
            self.current_index = index
            self.play_intent = True
        self._notify()
        return True

    def advance(self) -> bool:
        """Move to the next item. Returns False when the queue stopped at its end."""
        with self._lock:
            n = len(self._items)
            moved = False
            if n == 0:
                self.play_intent = False
            elif self.current_index < n - 1:
                self.current_index += 1
                moved = True
            elif self.repeat:
                self.current_index = 0
                moved = True
            else:
                self.current_index = n - 1
                self.play_intent = False
        self._notify()
        return moved

    def retreat(self) -> bool:
        with self._lock:
            n = len(self._items)
            moved = False
            if n == 0:
                self.play_intent = False
            elif self.current_index > 0:
                self.current_index -= 1
                moved = True
            elif self.repeat:
                self.current_index = n - 1
                moved = True
            else:
                self.current_index = 0
                self.play_intent = False
        self._notify()
        return moved

    def toggle_play_intent(self) -> bool:
        with self._lock:
            self.play_intent = not self.play_intent
            value = self.play_intent
        self._notify()
        return value

    def toggle_repeat(self) -> bool:
        with self._lock:
            self.repeat = not self.repeat
            value = self.repeat
        self._notify()
        return value

    def toggle_shuffle(self) -> bool:
        with self._lock:
            self.shuffle = not self.shuffle
            value = self.shuffle
        self._notify()
        return value
