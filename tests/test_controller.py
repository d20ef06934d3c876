"""
Tests for the bridge controller.
"""

import pytest

from flowbridge.bridge import controller as controller_module
from flowbridge.bridge.controller import BridgeState
from flowbridge.errors import EnvironmentFailure, InvalidValue
from flowbridge.sync.synchronizer import SyncState


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start(self, make_controller):
        controller = make_controller(name="Lab Bridge", port=5541)

        await controller.start()

        assert controller.state == BridgeState.RUNNING
        assert controller.storage_path.is_dir()
        options = controller.stack.options
        assert options.name == "Lab Bridge"
        assert options.port == 5541
        assert options.passcode == controller.pairing.passcode
        assert options.discriminator == controller.pairing.discriminator
        assert controller.context.stack is controller.stack
        assert controller.registry.context is controller.context

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, make_controller):
        controller = make_controller()
        await controller.start()
        pairing = controller.pairing

        await controller.start()

        assert controller.pairing is pairing

    @pytest.mark.asyncio
    async def test_pairing_regenerated_per_start(self, make_controller):
        controller = make_controller()
        await controller.start()
        first = controller.pairing
        await controller.stop()
        await controller.start()

        assert controller.pairing != first

    @pytest.mark.asyncio
    async def test_stop_closes_devices(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()
        sync = await controller.add_device(make_descriptor())

        await controller.stop()
        await controller.stop()

        assert controller.state == BridgeState.STOPPED
        assert sync.state == SyncState.CLOSED
        assert controller.devices == {}
        assert controller.registry is None
        assert not controller.stack.is_running

    @pytest.mark.asyncio
    async def test_invalid_pinned_passcode(self, make_controller):
        controller = make_controller(passcode=12345678)

        with pytest.raises(InvalidValue):
            await controller.start()

        assert controller.state == BridgeState.ERROR
        assert not controller.stack.is_running

    @pytest.mark.asyncio
    async def test_unknown_network_interface(self, make_controller, monkeypatch):
        monkeypatch.setattr(controller_module, "host_interfaces", lambda: ["lo", "eth0"])
        controller = make_controller(network_interface="wlan9")

        with pytest.raises(EnvironmentFailure) as exc:
            await controller.start()

        assert "wlan9" in str(exc.value)
        assert controller.state == BridgeState.ERROR

    @pytest.mark.asyncio
    async def test_known_network_interface(self, make_controller, monkeypatch):
        monkeypatch.setattr(controller_module, "host_interfaces", lambda: ["lo", "eth0"])
        controller = make_controller(network_interface="eth0")

        await controller.start()

        assert controller.stack.options.network_interface == "eth0"


class TestCommissioning:
    """Tests for commission()."""

    @pytest.mark.asyncio
    async def test_pinned_parameters(self, make_controller):
        controller = make_controller(passcode=20202021, discriminator=3840)
        await controller.start()

        info = await controller.commission()

        assert info["passcode"] == 20202021
        assert info["discriminator"] == 3840
        assert info["manual_pairing_code"] == "34970112332"
        assert info["commissioned"] is False

    @pytest.mark.asyncio
    async def test_commissioned_flag(self, make_controller):
        controller = make_controller()
        await controller.start()
        controller.stack.pair_controller()

        info = await controller.commission()

        assert info["commissioned"] is True
        assert info["fabrics"] == 1
        assert controller.to_dict()["commissioned"] is True

    @pytest.mark.asyncio
    async def test_not_running(self, make_controller):
        with pytest.raises(EnvironmentFailure):
            await make_controller().commission()


class TestDevices:
    """Tests for device management."""

    @pytest.mark.asyncio
    async def test_add_requires_running_bridge(self, make_controller, make_descriptor):
        with pytest.raises(EnvironmentFailure):
            await make_controller().add_device(make_descriptor())

    @pytest.mark.asyncio
    async def test_add_and_remove(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()

        sync = await controller.add_device(make_descriptor("d1"))
        assert controller.get_device("d1") is sync
        assert controller.to_dict()["devices"] == 1

        assert await controller.remove_device("d1") is True
        assert await controller.remove_device("d1") is False
        assert sync.state == SyncState.CLOSED


class TestEnvironmentFailure:
    """Tests for fatal protocol environment failures."""

    @pytest.mark.asyncio
    async def test_failure_closes_every_device(self, make_controller, make_descriptor):
        controller = make_controller()
        await controller.start()
        a = await controller.add_device(make_descriptor("a"))
        b = await controller.add_device(make_descriptor("b", "contactsensor"))

        await controller.stack.fail(EnvironmentFailure("radio gone"))

        assert controller.state == BridgeState.ERROR
        assert controller.last_error == "radio gone"
        assert a.state == SyncState.CLOSED
        assert b.state == SyncState.CLOSED
        assert controller.devices == {}

        with pytest.raises(EnvironmentFailure):
            await controller.add_device(make_descriptor("c"))

        await controller.stop()
        assert controller.state == BridgeState.STOPPED
