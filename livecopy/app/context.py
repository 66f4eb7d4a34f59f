from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from livecopy.domain import StorageDevice, WizardState


@dataclass
class AppContext:
    state: WizardState = WizardState.INSTALL_INFORMATION
    selected_devices: List[StorageDevice] = field(default_factory=list)
    transfer_source: Optional[StorageDevice] = None
    log_buffer: Deque[str] = field(default_factory=lambda: deque(maxlen=100))
    operation_active: bool = False

    def add_log(self, message: str) -> None:
        if message:
            self.log_buffer.append(message)
