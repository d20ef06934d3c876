"""
Per-device state synchronizer.

Keeps one virtual device's protocol attributes and its flow-side messages in
step:

    flow input ──validate──> change detect ──> protocol write ──> state
    protocol event ──> change detect ──> state ──> flow output

Flow inputs and protocol events land in one inbox and are handled by a single
worker task, so a device's state has exactly one writer. Devices never share
state, so they proceed independently.

Lifecycle:
    UNREGISTERED -> REGISTERING -> ACTIVE -> CLOSING -> CLOSED
"""

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..devices.kinds import DeviceKind
from ..devices.models import BatteryStatus, DeviceDescriptor, Origin, PendingWrite
from ..errors import BridgeError, EnvironmentFailure, RegistrationFailed
from ..protocol.base import AttributeChange, Subscription
from ..registry.devices import DeviceRegistry, RegisteredDevice
from . import battery
from .changes import diff, merge, will_apply

logger = logging.getLogger(__name__)

_STOP = object()


class SyncState(str, Enum):
    """Synchronizer lifecycle states."""
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class DeviceStatus:
    """Status surfaced to the owning flow node."""
    state: SyncState
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "error": self.error}


@dataclass
class _FlowInput:
    """A queued flow message and, if someone waits on it, its outcome."""
    msg: Dict[str, Any]
    outcome: Optional[asyncio.Future] = None

    def settle(self, error: Optional[Exception]) -> None:
        if self.outcome is not None and not self.outcome.done():
            self.outcome.set_result(error)


OutputCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]
StatusCallback = Callable[[str, DeviceStatus], Awaitable[None]]


class DeviceSynchronizer:
    """
    Synchronizes one device between the flow and the protocol endpoint.

    Passthrough: when enabled, every valid flow input is also forwarded to
    the flow output, and protocol echoes of the bridge's own writes are not
    emitted. Echoes are recognised by the correlation token attached to each
    write, or (when the stack cannot carry tokens) by matching an outstanding
    write's attribute and value within ``echo_window_seconds``.
    """

    def __init__(
        self,
        descriptor: DeviceDescriptor,
        registry: DeviceRegistry,
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
        echo_window_seconds: float = 2.0,
    ):
        self.descriptor = descriptor
        self.registry = registry
        self.on_output = on_output
        self.on_status = on_status
        self.echo_window_seconds = echo_window_seconds

        self.state = SyncState.UNREGISTERED
        self.device_state: Dict[str, Dict[str, Any]] = {}
        self.last_error: Optional[str] = None
        self.started_at: Optional[float] = None

        self._entry: Optional[RegisteredDevice] = None
        self._subscription: Optional[Subscription] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

        # token -> attribute tree still expected to echo back
        self._echoes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._echo_timers: Dict[str, asyncio.TimerHandle] = {}

        # Metrics
        self._inputs = 0
        self._writes = 0
        self._outputs = 0
        self._suppressed = 0
        self._errors = 0

    @property
    def device_id(self) -> str:
        return self.descriptor.device_id

    @property
    def passthrough(self) -> bool:
        return self.descriptor.passthrough

    @property
    def kind(self) -> Optional[DeviceKind]:
        return self._entry.kind if self._entry else None

    @property
    def endpoint_id(self) -> Optional[int]:
        return self._entry.endpoint.endpoint_id if self._entry else None

    @property
    def is_active(self) -> bool:
        return self.state == SyncState.ACTIVE

    @property
    def status(self) -> DeviceStatus:
        return DeviceStatus(self.state, self.last_error)

    @property
    def battery(self) -> Optional[BatteryStatus]:
        return battery.battery_status(self.descriptor.battery, self.device_state)

    @property
    def payload(self) -> Any:
        """Current state as a flow payload."""
        if not self.kind:
            return None
        return self.kind.to_payload(self.device_state)

    # === Lifecycle ===

    async def start(self) -> None:
        """Register the device and begin synchronizing."""
        if self.state in (SyncState.REGISTERING, SyncState.ACTIVE):
            return
        if self.state != SyncState.UNREGISTERED:
            raise RuntimeError(f"Cannot start synchronizer in state {self.state.value}")

        self.state = SyncState.REGISTERING
        await self._report()

        try:
            self._entry = await self.registry.register(self.descriptor)
        except (RegistrationFailed, EnvironmentFailure) as e:
            await self._abort_start(e)
            raise

        self.device_state = copy.deepcopy(self._entry.initial_attributes)
        stack = self.registry.context.stack
        try:
            self._subscription = await stack.subscribe(self._entry.endpoint, self._on_attribute_change)
        except (RegistrationFailed, EnvironmentFailure) as e:
            await self.registry.deregister(self.device_id)
            await self._abort_start(e)
            raise

        self.state = SyncState.ACTIVE
        self.started_at = time.time()
        self.last_error = None
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Device {self.device_id} active (passthrough={'on' if self.passthrough else 'off'})")
        await self._report()

    async def _abort_start(self, error: BridgeError) -> None:
        self._entry = None
        self.device_state = {}
        self.state = SyncState.UNREGISTERED
        self.last_error = str(error)
        self._errors += 1
        logger.error(f"Device {self.device_id} failed to register: {error}")
        await self._report()

    async def close(self, reason: str = "closed") -> None:
        """Stop synchronizing and detach the device. Safe to call repeatedly."""
        if self.state in (SyncState.CLOSING, SyncState.CLOSED):
            return

        if self.state == SyncState.UNREGISTERED:
            self.state = SyncState.CLOSED
            await self._report()
            return

        logger.info(f"Device {self.device_id} closing: {reason}")
        self.state = SyncState.CLOSING
        await self._report()

        if self._subscription:
            try:
                await self.registry.context.stack.unsubscribe(self._subscription)
            except BridgeError as e:
                logger.warning(f"Device {self.device_id}: unsubscribe failed: {e}")
            self._subscription = None

        # Queued work is dropped; an in-flight write is allowed to finish
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _FlowInput):
                item.settle(EnvironmentFailure(f"device {self.device_id} closed"))
            self._inbox.task_done()
        if self._task and not self._task.done():
            self._inbox.put_nowait(_STOP)
            # Closed from an output or status callback: the worker stops on its own
            if asyncio.current_task() is not self._task:
                await self._task
        self._task = None

        for timer in self._echo_timers.values():
            timer.cancel()
        self._echo_timers.clear()
        self._echoes.clear()

        await self.registry.deregister(self.device_id)
        self._entry = None
        self.device_state = {}
        self.state = SyncState.CLOSED
        await self._report()

    # === Inbound ===

    def submit(self, msg: Mapping[str, Any], outcome: Optional[asyncio.Future] = None) -> bool:
        """
        Queue a flow message for this device.

        Never blocks; returns False if the device is not active. If given,
        ``outcome`` resolves to None once the message is handled, or to the
        error it failed with.
        """
        if self.state != SyncState.ACTIVE:
            logger.warning(f"Device {self.device_id} is {self.state.value}; dropping input")
            return False
        self._inputs += 1
        self._inbox.put_nowait(_FlowInput(dict(msg), outcome))
        return True

    def _on_attribute_change(self, change: AttributeChange) -> None:
        if self.state != SyncState.ACTIVE:
            return
        self._inbox.put_nowait(change)

    async def drain(self) -> None:
        """Wait until everything queued so far has been handled."""
        await self._inbox.join()

    async def _run_loop(self) -> None:
        """Main loop - process the inbox one item at a time."""
        while True:
            item = await self._inbox.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, AttributeChange):
                    await self._handle_protocol(item)
                else:
                    await self._handle_flow(item.msg)
            except BridgeError as e:
                await self._fail(e)
                self._settle(item, e)
            except Exception as e:
                logger.exception(f"Device {self.device_id}: unexpected error")
                await self._fail(e)
                self._settle(item, e)
            else:
                self._settle(item, None)
                if self.last_error and self.is_active:
                    self.last_error = None
                    await self._report()
            finally:
                self._inbox.task_done()

    @staticmethod
    def _settle(item: Any, error: Optional[Exception]) -> None:
        if isinstance(item, _FlowInput):
            item.settle(error)

    # === Flow -> Protocol ===

    async def _handle_flow(self, msg: Dict[str, Any]) -> None:
        topic = msg.get("topic")

        if topic == "state":
            await self._emit({"payload": self.payload})
            return

        token = uuid.uuid4().hex[:16]
        if topic == "battery":
            writes = battery.apply_battery_message(
                self.descriptor.battery, self.device_id, msg.get("payload"), token=token,
            )
        else:
            candidate = self.kind.to_attributes(msg.get("payload"))
            writes = [
                PendingWrite(self.device_id, cluster, attribute, value, Origin.FLOW, token)
                for cluster, attributes in candidate.items()
                for attribute, value in attributes.items()
            ]

        changed = [w for w in writes if will_apply(self.device_state, w.as_tree())]
        if changed:
            await self._commit(changed)
        else:
            logger.debug(f"Device {self.device_id}: input matches current state, no write")

        if self.passthrough:
            await self._emit(msg)

    async def _commit(self, writes: List[PendingWrite]) -> None:
        """Write one flow message's changed attributes under their shared token."""
        token = writes[0].token
        changes: Dict[str, Dict[str, Any]] = {}
        for write in writes:
            changes.setdefault(write.cluster, {})[write.attribute] = write.value

        self._echoes[token] = copy.deepcopy(changes)
        try:
            await self.registry.context.stack.write_attributes(self._entry.endpoint, changes, token=token)
        except BaseException:
            self._echoes.pop(token, None)
            raise

        merge(self.device_state, changes)
        self._writes += 1
        logger.debug(f"Device {self.device_id}: wrote {changes} (token {token})")

        if token in self._echoes:
            loop = asyncio.get_running_loop()
            self._echo_timers[token] = loop.call_later(self.echo_window_seconds, self._expire_echo, token)

    def _expire_echo(self, token: str) -> None:
        self._echoes.pop(token, None)
        self._echo_timers.pop(token, None)

    # === Protocol -> Flow ===

    def _match_echo(self, write: PendingWrite) -> bool:
        """Consume the outstanding flow write this protocol change echoes, if any."""
        if write.token is not None:
            candidates = [write.token] if write.token in self._echoes else []
        else:
            candidates = list(self._echoes)

        for token in candidates:
            pending = self._echoes[token].get(write.cluster, {})
            if write.attribute not in pending:
                continue
            if write.token is None and pending[write.attribute] != write.value:
                continue
            del pending[write.attribute]
            if not pending:
                del self._echoes[token][write.cluster]
            if not self._echoes[token]:
                self._expire_echo_now(token)
            return True
        return False

    def _expire_echo_now(self, token: str) -> None:
        timer = self._echo_timers.pop(token, None)
        if timer:
            timer.cancel()
        self._echoes.pop(token, None)

    async def _handle_protocol(self, change: AttributeChange) -> None:
        write = PendingWrite(
            self.device_id, change.cluster, change.attribute, change.value, Origin.PROTOCOL, change.token,
        )
        is_echo = self._match_echo(write)

        changes = diff(self.device_state, write.as_tree())
        if not changes:
            return
        merge(self.device_state, changes)

        if self.kind.binding_for(write.cluster, write.attribute) is None:
            logger.debug(f"Device {self.device_id}: {write.cluster}.{write.attribute} updated (no flow mapping)")
            return

        if is_echo and self.passthrough:
            self._suppressed += 1
            logger.debug(f"Device {self.device_id}: suppressed echo of own write to {write.cluster}.{write.attribute}")
            return

        await self._emit({"payload": self.payload})

    # === Outbound ===

    async def _emit(self, msg: Dict[str, Any]) -> None:
        self._outputs += 1
        if self.on_output:
            await self.on_output(self.device_id, msg)

    async def _fail(self, error: Exception) -> None:
        self._errors += 1
        self.last_error = str(error)
        logger.warning(f"Device {self.device_id}: {error}")
        await self._report()

    async def _report(self) -> None:
        if self.on_status:
            await self.on_status(self.device_id, self.status)

    def stats(self) -> Dict[str, Any]:
        """Get synchronizer statistics."""
        return {
            "inputs": self._inputs,
            "writes": self._writes,
            "outputs": self._outputs,
            "suppressed_echoes": self._suppressed,
            "errors": self._errors,
            "pending_echoes": len(self._echoes),
        }
