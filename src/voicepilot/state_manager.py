"""
State Manager for VoicePilot

Owns the assistant's observable state: the current phase, the busy
indicator, the UI triggers (camera, gallery, dialer) and the visible
transcript. Engines write through this object; everything else subscribes.
"""

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
import threading

from voicepilot.utils import logger

logger = logger.get_logger("StateManager")


class AppState(Enum):
    """Application phases"""
    IDLE = "idle"
    RECORDING = "recording" # microphone open
    TRANSCRIBING = "transcribing" # speech-to-text running
    DISPATCHING = "dispatching" # waiting on the generative model
    RESPONDING = "responding" # running a handler (weather, time, call)
    STREAMING = "streaming" # multimodal answer being generated


BUSY_STATES = (AppState.TRANSCRIBING, AppState.DISPATCHING, AppState.RESPONDING, AppState.STREAMING)

TRIGGERS = ("camera", "gallery", "dialer")


@dataclass(frozen=True)
class AssistantSnapshot:
    """Immutable view of the assistant at one instant"""
    state: AppState
    timestamp: datetime
    user_prompt: str = ""
    result_text: str = ""
    notice: Optional[str] = None
    speaking: bool = False
    camera_triggered: bool = False
    gallery_triggered: bool = False
    dialer_triggered: bool = False
    dialer_contact: str = ""

    @property
    def busy(self) -> bool:
        return self.state in BUSY_STATES

    @property
    def recording(self) -> bool:
        return self.state == AppState.RECORDING

    @property
    def streaming(self) -> bool:
        return self.state == AppState.STREAMING

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        data["timestamp"] = self.timestamp.isoformat()
        data["busy"] = self.busy
        data["recording"] = self.recording
        data["streaming"] = self.streaming
        return data


Subscriber = Callable[[AssistantSnapshot, AssistantSnapshot], None]


class StateManager:
    """
    Centralized, thread-safe assistant state.

    Every change replaces the snapshot atomically and notifies subscribers
    with (new_snapshot, old_snapshot).
    """

    def __init__(self):
        self._snapshot = AssistantSnapshot(state=AppState.IDLE, timestamp=datetime.now())
        self._lock = threading.RLock()
        self._subscribers: List[Subscriber] = []

    @property
    def current_state(self) -> AppState:
        with self._lock:
            return self._snapshot.state

    @property
    def snapshot(self) -> AssistantSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def busy(self) -> bool:
        return self.snapshot.busy

    def transition_to(self, new_state: AppState, **changes) -> bool:
        """
        Move to a new phase, optionally updating other fields.

        Returns:
            bool: True if the transition was valid and applied
        """
        with self._lock:
            old = self._snapshot
            if not self._is_valid_transition(old.state, new_state):
                logger.warning(
                    f"Invalid transition from {old.state.value} to {new_state.value}"
                )
                return False

            self._snapshot = replace(old, state=new_state, timestamp=datetime.now(), **changes)
            logger.info(f"State transition: {old.state.value} -> {new_state.value}")
            new = self._snapshot
            self._notify(new, old)
            return True

    def update(self, **changes) -> AssistantSnapshot:
        """Change fields without changing phase"""
        if "state" in changes:
            raise ValueError("use transition_to() to change the phase")
        with self._lock:
            old = self._snapshot
            self._snapshot = replace(old, timestamp=datetime.now(), **changes)
            new = self._snapshot
            self._notify(new, old)
            return new

    def _is_valid_transition(self, from_state: AppState, to_state: AppState) -> bool:
        """
        Valid transitions:
        - any state -> IDLE
        - IDLE -> RECORDING, TRANSCRIBING or DISPATCHING
        - RECORDING -> TRANSCRIBING
        - TRANSCRIBING -> DISPATCHING
        - DISPATCHING -> RESPONDING or STREAMING
        """
        if to_state == AppState.IDLE:
            return True

        valid_transitions = {
            AppState.IDLE: [AppState.RECORDING, AppState.TRANSCRIBING, AppState.DISPATCHING],
            AppState.RECORDING: [AppState.TRANSCRIBING],
            AppState.TRANSCRIBING: [AppState.DISPATCHING],
            AppState.DISPATCHING: [AppState.RESPONDING, AppState.STREAMING],
            AppState.RESPONDING: [],
            AppState.STREAMING: [],
        }
        return to_state in valid_transitions.get(from_state, [])

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for every state change.

        Returns:
            A function that removes the callback again
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self, new: AssistantSnapshot, old: AssistantSnapshot):
        for callback in list(self._subscribers):
            try:
                callback(new, old)
            except Exception as e:
                logger.error(f"Error in state subscriber: {e}")

    def acknowledge_trigger(self, name: str) -> AssistantSnapshot:
        """The UI has acted on a trigger; lower the flag"""
        if name not in TRIGGERS:
            raise ValueError(f"Unknown trigger: {name}")
        changes = {f"{name}_triggered": False}
        if name == "dialer":
            changes["dialer_contact"] = ""
        return self.update(**changes)

    def reset(self):
        """Reset to idle with all triggers lowered"""
        self.transition_to(
            AppState.IDLE,
            notice=None,
            speaking=False,
            camera_triggered=False,
            gallery_triggered=False,
            dialer_triggered=False,
            dialer_contact="",
        )

    def get_state_info(self) -> dict:
        """Get current state information as dictionary"""
        return self.snapshot.to_dict()
