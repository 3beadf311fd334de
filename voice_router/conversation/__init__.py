from voice_router.conversation.dialog_manager import DialogManager
from voice_router.conversation.slot_manager import Slots, SlotStatus
from voice_router.conversation.state_machine import (
    DialogStateMachine,
    DialogTrigger,
    Phase,
)

__all__ = [
    "DialogManager",
    "DialogStateMachine",
    "DialogTrigger",
    "Phase",
    "Slots",
    "SlotStatus",
]
