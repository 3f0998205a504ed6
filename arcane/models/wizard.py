from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class Wizard:
    id: str
    owner: str
    name: str
    description: str = ""
    illustration: str | None = None
    wins: int = 0
    losses: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def total_duels(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        if self.total_duels == 0:
            return 0.0
        return self.wins / self.total_duels
