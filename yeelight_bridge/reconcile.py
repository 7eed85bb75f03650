"""Match freshly discovered bulbs against accessories the host already knows.

Pure decision logic. The host passes in its known identities and gets back
one action per usable record: CREATE for a bulb seen for the first time,
RESTORE for a bulb whose stable key is already registered.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from .discovery import DeviceRecord

logger = logging.getLogger(__name__)

# Fixed namespace so the same bulb id always maps to the same key.
_KEY_NAMESPACE = uuid.UUID("6f1b5c2e-3d7a-5e0b-9a41-7c9e2f0d8b13")


def stable_key(device_id: str) -> str:
    """Deterministic accessory key for a bulb id."""
    return str(uuid.uuid5(_KEY_NAMESPACE, device_id))


class Action(enum.Enum):
    CREATE = "create"
    RESTORE = "restore"


@dataclass(frozen=True)
class KnownIdentity:
    """A previously registered accessory: its key plus the host's handle."""

    key: str
    handle: Any = None


@dataclass(frozen=True)
class ReconcileAction:
    action: Action
    record: DeviceRecord
    key: str
    identity: Optional[KnownIdentity] = None


def reconcile(
    records: Iterable[DeviceRecord],
    known: Iterable[KnownIdentity],
) -> List[ReconcileAction]:
    """Decide create vs. restore for each record, in the order given.

    Records without an id are dropped; the output is then shorter than the
    input. A bulb that replied twice yields two actions with the same key;
    the host decides what a second CREATE means for it (see apply_actions).
    """
    by_key = {identity.key: identity for identity in known}
    actions: List[ReconcileAction] = []

    for record in records:
        device_id = record.id
        if device_id is None:
            logger.info("Ignoring discovery reply without id (from %s)", record.sender)
            continue

        key = stable_key(device_id)
        identity = by_key.get(key)
        if identity is not None:
            actions.append(ReconcileAction(Action.RESTORE, record, key, identity))
        else:
            actions.append(ReconcileAction(Action.CREATE, record, key))

    return actions


def apply_actions(
    actions: Iterable[ReconcileAction],
    register_new: Callable[[DeviceRecord, str], Any],
    restore_existing: Callable[[KnownIdentity, DeviceRecord], Any],
) -> List[Any]:
    """Dispatch actions to the host callbacks.

    A CREATE whose key was already registered earlier in the same batch
    (a bulb answering the probe twice) is turned into a RESTORE of the
    handle returned by ``register_new``, so a bulb is never created twice.
    """
    created = {}
    handles = []
    for item in actions:
        if item.action is Action.RESTORE:
            handles.append(restore_existing(item.identity, item.record))
        elif item.key in created:
            handles.append(restore_existing(created[item.key], item.record))
        else:
            handle = register_new(item.record, item.key)
            created[item.key] = KnownIdentity(item.key, handle)
            handles.append(handle)
    return handles
