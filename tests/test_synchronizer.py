"""
Tests for the per-device synchronizer.
"""

import asyncio
import dataclasses

import pytest

from flowbridge.devices.models import BatteryLevel, BatteryStatus, BatteryType
from flowbridge.errors import DuplicateId, EnvironmentFailure, InvalidValue, RegistrationFailed
from flowbridge.protocol.memory import MemoryStack
from flowbridge.sync.synchronizer import DeviceSynchronizer, SyncState


class HoldingStack(MemoryStack):
    """Holds attribute-change notifications until release()."""

    def __init__(self, drop_tokens=False, **kwargs):
        super().__init__(**kwargs)
        self.drop_tokens = drop_tokens
        self.held = []

    async def subscribe(self, endpoint, callback):
        def hold(change):
            if self.drop_tokens:
                change = dataclasses.replace(change, token=None)
            self.held.append((callback, change))
        return await super().subscribe(endpoint, hold)

    def release(self):
        held, self.held = self.held, []
        for callback, change in held:
            callback(change)


class GatedStack(MemoryStack):
    """Blocks every write until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def write_attributes(self, endpoint, values, token=None):
        self.entered.set()
        await self.gate.wait()
        await super().write_attributes(endpoint, values, token)


class Recorder:
    """Collects outputs and status changes of one device."""

    def __init__(self):
        self.outputs = []
        self.statuses = []

    async def on_output(self, device_id, msg):
        self.outputs.append(msg)

    async def on_status(self, device_id, status):
        self.statuses.append(status)

    @property
    def payloads(self):
        return [m["payload"] for m in self.outputs]


async def _device(make_controller, descriptor, stack=None, **config):
    controller = make_controller(stack, **config)
    await controller.start()
    recorder = Recorder()
    sync = await controller.add_device(descriptor, recorder.on_output, recorder.on_status)
    return controller, sync, recorder


class TestLifecycle:
    """Tests for start/close."""

    @pytest.mark.asyncio
    async def test_start_reports_registering_then_active(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        assert sync.state == SyncState.ACTIVE
        assert [s.state for s in rec.statuses] == [SyncState.REGISTERING, SyncState.ACTIVE]
        assert sync.device_state["onOff"] == {"onOff": False}
        assert sync.payload is False

    @pytest.mark.asyncio
    async def test_registration_failure_stays_unregistered(self, make_controller, make_descriptor):
        controller, first, _ = await _device(make_controller, make_descriptor("d1"))
        rec = Recorder()
        sync = DeviceSynchronizer(make_descriptor("d1"), controller.registry, rec.on_output, rec.on_status)

        with pytest.raises(DuplicateId):
            await sync.start()

        assert sync.state == SyncState.UNREGISTERED
        assert "already registered" in rec.statuses[-1].error
        assert first.is_active

    @pytest.mark.asyncio
    async def test_unknown_type_is_registration_failure(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()
        sync = DeviceSynchronizer(make_descriptor("d1", "toaster"), controller.registry)

        with pytest.raises(RegistrationFailed):
            await sync.start()
        assert sync.state == SyncState.UNREGISTERED

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        await sync.close()
        await sync.close()

        assert sync.state == SyncState.CLOSED
        assert controller.stack.aggregated() == []
        assert "dev-1" not in controller.registry
        assert sync.submit({"payload": True}) is False

    @pytest.mark.asyncio
    async def test_close_lets_in_flight_write_finish(self, make_controller, make_descriptor):
        stack = GatedStack()
        controller, sync, rec = await _device(make_controller, make_descriptor(), stack)

        sync.submit({"payload": True})
        await stack.entered.wait()
        sync.submit({"payload": False})

        closing = asyncio.create_task(sync.close())
        await asyncio.sleep(0)
        stack.gate.set()
        await closing

        assert [values for _, values, _ in stack.writes] == [{"onOff": {"onOff": True}}]
        assert sync.state == SyncState.CLOSED

    @pytest.mark.asyncio
    async def test_close_from_output_callback(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()

        async def on_output(device_id, msg):
            await controller.remove_device(device_id)

        sync = await controller.add_device(make_descriptor(passthrough=True), on_output=on_output)
        sync.submit({"payload": True})
        await asyncio.wait_for(sync.drain(), 1.0)

        assert sync.state == SyncState.CLOSED
        assert controller.get_device(sync.device_id) is None
        assert controller.stack.aggregated() == []

    @pytest.mark.asyncio
    async def test_close_settles_dropped_messages(self, make_controller, make_descriptor):
        stack = GatedStack()
        controller, sync, rec = await _device(make_controller, make_descriptor(), stack)
        dropped = asyncio.get_running_loop().create_future()

        sync.submit({"payload": True})
        await stack.entered.wait()
        sync.submit({"payload": False}, dropped)

        closing = asyncio.create_task(sync.close())
        await asyncio.sleep(0)
        stack.gate.set()
        await closing

        assert isinstance(await dropped, EnvironmentFailure)


class TestFlowToProtocol:
    """Tests for flow inputs."""

    @pytest.mark.asyncio
    async def test_write_then_idempotent_resend(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor("d1"))
        stack = controller.stack

        sync.submit({"payload": True})
        await sync.drain()

        assert len(stack.writes) == 1
        endpoint_id, values, token = stack.writes[0]
        assert values == {"onOff": {"onOff": True}}
        assert token
        assert stack.attributes(endpoint_id)["onOff"]["onOff"] is True
        assert sync.device_state["onOff"]["onOff"] is True

        sync.submit({"payload": True})
        await sync.drain()

        assert len(stack.writes) == 1
        assert rec.outputs == []

    @pytest.mark.asyncio
    async def test_only_changed_attributes_written(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor("lamp", "dimmablelight"))

        sync.submit({"payload": {"state": True, "level": 50}})
        sync.submit({"payload": {"state": True, "level": 100}})
        await sync.drain()

        assert [values for _, values, _ in controller.stack.writes] == [
            {"onOff": {"onOff": True}, "levelControl": {"currentLevel": 127}},
            {"levelControl": {"currentLevel": 254}},
        ]
        assert sync.payload == {"state": True, "level": 100}

    @pytest.mark.asyncio
    async def test_writes_apply_in_arrival_order(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor("t", "temperaturesensor"))

        for value in (20, 21, 22, 21):
            sync.submit({"payload": value})
        await sync.drain()

        assert [v["temperatureMeasurement"]["measuredValue"] for _, v, _ in controller.stack.writes] == [
            2000, 2100, 2200, 2100,
        ]

    @pytest.mark.asyncio
    async def test_invalid_value_reported_and_worker_survives(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        sync.submit({"payload": "maybe"})
        await sync.drain()

        assert controller.stack.writes == []
        assert sync.last_error == "expected boolean, got 'maybe'"
        assert rec.statuses[-1].error == sync.last_error

        sync.submit({"payload": True})
        await sync.drain()

        assert len(controller.stack.writes) == 1
        assert sync.last_error is None
        assert rec.statuses[-1].ok

    @pytest.mark.asyncio
    async def test_write_failure_keeps_state_so_next_change_retries(self, make_controller, make_descriptor):
        stack = MemoryStack(reject_writes=True)
        controller, sync, rec = await _device(make_controller, make_descriptor(), stack)

        sync.submit({"payload": True})
        await sync.drain()

        assert "rejected" in sync.last_error
        assert sync.device_state["onOff"]["onOff"] is False

        stack.reject_writes = False
        sync.submit({"payload": True})
        await sync.drain()

        assert sync.device_state["onOff"]["onOff"] is True
        assert len(stack.writes) == 1

    @pytest.mark.asyncio
    async def test_state_topic_emits_current_payload(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor("lock", "doorlock"))

        sync.submit({"payload": "unlocked"})
        sync.submit({"topic": "state", "payload": None})
        await sync.drain()

        assert rec.payloads == ["unlocked"]
        assert len(controller.stack.writes) == 1

    @pytest.mark.asyncio
    async def test_one_device_failure_does_not_affect_another(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()
        bad_rec, good_rec = Recorder(), Recorder()
        bad = await controller.add_device(make_descriptor("bad"), bad_rec.on_output, bad_rec.on_status)
        good = await controller.add_device(make_descriptor("good"), good_rec.on_output, good_rec.on_status)

        bad.submit({"payload": 7})
        good.submit({"payload": True})
        await bad.drain()
        await good.drain()

        assert bad.last_error
        assert good.last_error is None
        assert good.device_state["onOff"]["onOff"] is True
        assert bad.is_active

    @pytest.mark.asyncio
    async def test_outcome_is_per_message(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())
        loop = asyncio.get_running_loop()
        bad, state, good = loop.create_future(), loop.create_future(), loop.create_future()

        sync.submit({"payload": "dim"}, bad)
        sync.submit({"topic": "state", "payload": None}, state)
        sync.submit({"payload": True}, good)

        assert isinstance(await bad, InvalidValue)
        assert await state is None
        assert await good is None

    @pytest.mark.asyncio
    async def test_state_topic_clears_error(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        sync.submit({"payload": "dim"})
        sync.submit({"topic": "state", "payload": None})
        await sync.drain()

        assert sync.last_error is None
        assert rec.statuses[-1].ok
        assert rec.payloads == [False]


class TestPassthrough:
    """Tests for passthrough and echo suppression."""

    @pytest.mark.asyncio
    async def test_inputs_forwarded(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor(passthrough=True))

        sync.submit({"payload": True})
        sync.submit({"payload": True})
        await sync.drain()

        assert rec.outputs == [{"payload": True}, {"payload": True}]
        assert len(controller.stack.writes) == 1

    @pytest.mark.asyncio
    async def test_invalid_input_not_forwarded(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor(passthrough=True))

        sync.submit({"payload": "maybe"})
        await sync.drain()

        assert rec.outputs == []

    @pytest.mark.asyncio
    async def test_late_echoes_suppressed(self, make_controller, make_descriptor):
        stack = HoldingStack()
        controller, sync, rec = await _device(make_controller, make_descriptor(passthrough=True), stack)

        sync.submit({"payload": True})
        sync.submit({"payload": False})
        await sync.drain()
        stack.release()
        await sync.drain()

        assert rec.payloads == [True, False]
        assert sync.device_state["onOff"]["onOff"] is False
        assert sync.stats()["suppressed_echoes"] == 2

    @pytest.mark.asyncio
    async def test_late_echoes_matched_by_value_without_tokens(self, make_controller, make_descriptor):
        stack = HoldingStack(drop_tokens=True)
        controller, sync, rec = await _device(make_controller, make_descriptor(passthrough=True), stack)

        sync.submit({"payload": True})
        sync.submit({"payload": False})
        await sync.drain()
        stack.release()
        await sync.drain()

        assert rec.payloads == [True, False]

    @pytest.mark.asyncio
    async def test_echo_after_window_is_a_change(self, make_controller, make_descriptor):
        stack = HoldingStack()
        controller, sync, rec = await _device(
            make_controller, make_descriptor(passthrough=True), stack, echo_window_seconds=0.01,
        )

        sync.submit({"payload": True})
        sync.submit({"payload": False})
        await sync.drain()
        await asyncio.sleep(0.05)
        stack.release()
        await sync.drain()

        assert rec.payloads == [True, False, True, False]

    @pytest.mark.asyncio
    async def test_without_passthrough_late_echoes_are_reported(self, make_controller, make_descriptor):
        stack = HoldingStack()
        controller, sync, rec = await _device(make_controller, make_descriptor(), stack)

        sync.submit({"payload": True})
        sync.submit({"payload": False})
        await sync.drain()
        stack.release()
        await sync.drain()

        assert rec.payloads == [True, False]


class TestProtocolToFlow:
    """Tests for protocol-originated changes."""

    @pytest.mark.asyncio
    async def test_controller_change_emitted(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor(passthrough=True))

        await controller.stack.controller_write(sync.endpoint_id, "onOff", "onOff", True)
        await sync.drain()

        assert rec.outputs == [{"payload": True}]
        assert sync.device_state["onOff"]["onOff"] is True

    @pytest.mark.asyncio
    async def test_object_payload_emitted_whole(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor("lamp", "dimmablelight"))

        await controller.stack.controller_write(sync.endpoint_id, "levelControl", "currentLevel", 254)
        await sync.drain()

        assert rec.payloads == [{"state": False, "level": 100}]

    @pytest.mark.asyncio
    async def test_unmapped_attribute_updates_state_only(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        await controller.stack.controller_write(
            sync.endpoint_id, "bridgedDeviceBasicInformation", "nodeLabel", "Renamed",
        )
        await sync.drain()

        assert rec.outputs == []
        assert sync.device_state["bridgedDeviceBasicInformation"]["nodeLabel"] == "Renamed"

    @pytest.mark.asyncio
    async def test_controller_change_clears_error(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        sync.submit({"payload": "dim"})
        await sync.drain()
        assert sync.last_error

        await controller.stack.controller_write(sync.endpoint_id, "onOff", "onOff", True)
        await sync.drain()

        assert sync.last_error is None
        assert rec.statuses[-1].ok


class TestBattery:
    """Tests for battery messages through the synchronizer."""

    @pytest.mark.asyncio
    async def test_battery_update(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(
            make_controller, make_descriptor("d2", "contactsensor", BatteryType.REPLACEABLE),
        )

        sync.submit({"topic": "battery", "payload": {"level": 1, "percent": 20, "charge": 0}})
        await sync.drain()

        assert sync.battery == BatteryStatus(BatteryLevel.LOW, 20, False)
        power = controller.stack.attributes(sync.endpoint_id)["powerSource"]
        assert power["batChargeLevel"] == 1
        assert power["batPercentRemaining"] == 40
        assert sync.last_error is None

    @pytest.mark.asyncio
    async def test_percent_boundary(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(
            make_controller, make_descriptor("d2", "contactsensor", BatteryType.REPLACEABLE),
        )
        sync.submit({"topic": "battery", "payload": {"percent": 40}})
        await sync.drain()

        sync.submit({"topic": "battery", "payload": {"percent": 101}})
        await sync.drain()
        assert "percent" in sync.last_error
        assert sync.battery.percent == 40

        sync.submit({"topic": "battery", "payload": {"percent": 100}})
        await sync.drain()
        assert sync.last_error is None
        assert sync.battery.percent == 100

    @pytest.mark.asyncio
    async def test_rechargeable_charging(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(
            make_controller, make_descriptor("d3", "onoffsocket", BatteryType.RECHARGEABLE),
        )

        sync.submit({"topic": "battery", "payload": {"battery": {"charge": 1}}})
        await sync.drain()

        assert sync.battery.charging is True

    @pytest.mark.asyncio
    async def test_battery_message_without_battery(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(make_controller, make_descriptor())

        sync.submit({"topic": "battery", "payload": {"percent": 50}})
        await sync.drain()

        assert sync.last_error
        assert sync.battery is None
        assert controller.stack.writes == []

    @pytest.mark.asyncio
    async def test_battery_message_is_one_tokened_write(self, make_controller, make_descriptor):
        controller, sync, rec = await _device(
            make_controller, make_descriptor("d2", "contactsensor", BatteryType.REPLACEABLE, passthrough=True),
        )

        sync.submit({"topic": "battery", "payload": {"level": 1, "percent": 20}})
        await sync.drain()

        _, values, token = controller.stack.writes[-1]
        assert values == {"powerSource": {"batChargeLevel": 1, "batPercentRemaining": 40}}
        assert token
        assert sync.stats()["pending_echoes"] == 0
        assert len(rec.outputs) == 1
