from dataclasses import dataclass, field
import threading
from typing import Dict, Optional

from markbook.state.marks_store import MarksStore


@dataclass
class MarksSession:
    store: MarksStore
    # store_lock guards reads and edits of the store; save_lock allows one save at a time.
    store_lock: threading.RLock = field(default_factory=threading.RLock)
    save_lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class AppState:
    sessions: Dict[str, MarksSession] = field(default_factory=dict)

    def get(self, uid: str) -> Optional[MarksSession]:
        return self.sessions.get(uid)

    def open(self, uid: str, store: MarksStore) -> MarksSession:
        session = MarksSession(store=store)
        self.sessions[uid] = session
        return session


app_state = AppState()
