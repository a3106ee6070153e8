"""
Network provider: resolves VM network interfaces to vSphere networks and
builds the ethernet card devices and backings for them.
"""

import logging
from typing import List

from pyVmomi import vim

from vm_operator.errors import ReferenceNotFound
from vm_operator.models import NetworkInterface, NetworkRef
from vm_operator.vsphere.configspec import DeviceKeyAllocator

logger = logging.getLogger(__name__)

CARD_TYPES = {
    "vmxnet3": vim.vm.device.VirtualVmxnet3,
    "vmxnet2": vim.vm.device.VirtualVmxnet2,
    "e1000": vim.vm.device.VirtualE1000,
    "e1000e": vim.vm.device.VirtualE1000e,
    "pcnet32": vim.vm.device.VirtualPCNet32,
}


def create_backing(network: NetworkRef):
    if network.network_type == "DistributedVirtualPortgroup":
        backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo()
        backing.port = vim.dvs.PortConnection(
            portgroupKey=network.portgroup_key or network.moid,
            switchUuid=network.switch_uuid,
        )
        return backing
    if network.network_type == "OpaqueNetwork":
        return vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo(
            opaqueNetworkId=network.moid,
            opaqueNetworkType="nsx.LogicalSwitch",
        )
    backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()
    backing.deviceName = network.name
    return backing


def network_identity(network: NetworkRef) -> str:
    """The network identifier a backing built by create_backing() carries."""
    if network.network_type == "DistributedVirtualPortgroup":
        return network.portgroup_key or network.moid
    if network.network_type == "OpaqueNetwork":
        return network.moid
    return network.name


def backing_identity(backing) -> str:
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo):
        return backing.port.portgroupKey if backing.port else ""
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo):
        return backing.opaqueNetworkId or ""
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo):
        return backing.deviceName or ""
    return ""


def _connectable():
    return vim.vm.device.VirtualDevice.ConnectInfo(
        startConnected=True,
        connected=True,
        allowGuestControl=True,
    )


def create_nic_device(network: NetworkRef, card_type: str, key: int):
    card_class = CARD_TYPES.get(card_type.lower() if card_type else "vmxnet3")
    if card_class is None:
        raise ReferenceNotFound(f"unsupported ethernet card type {card_type}")
    nic = card_class()
    nic.key = key
    nic.backing = create_backing(network)
    nic.addressType = "generated"
    nic.connectable = _connectable()
    return nic


def reset_nic_identity(nic, network: NetworkRef):
    """Point a class provided NIC at the resolved network and drop its MAC."""
    nic.backing = create_backing(network)
    nic.macAddress = None
    nic.addressType = "generated"
    if nic.connectable is None:
        nic.connectable = _connectable()


class NetworkProvider:
    """Resolves interface network names through the vSphere client."""

    def __init__(self, client):
        self.client = client

    def resolve(self, interface: NetworkInterface) -> NetworkRef:
        network = self.client.find_network(interface.network_name)
        if network is None:
            raise ReferenceNotFound(f"network {interface.network_name} not found")
        return network

    def apply_interfaces(self, config_spec: vim.vm.ConfigSpec, interfaces: List[NetworkInterface],
                         allocator: DeviceKeyAllocator):
        """
        Make the spec's NIC device changes match ``interfaces``.

        Class provided NICs are paired with interfaces by position and
        get their backing replaced; unpaired class NICs are removed and
        the remaining interfaces get a new NIC each.
        """
        class_nics = [
            change for change in config_spec.deviceChange
            if isinstance(change.device, vim.vm.device.VirtualEthernetCard)
        ]
        class_nic_ids = {id(change) for change in class_nics}
        others = [change for change in config_spec.deviceChange if id(change) not in class_nic_ids]

        nic_changes = []
        for index, interface in enumerate(interfaces):
            network = self.resolve(interface)
            if index < len(class_nics):
                change = class_nics[index]
                reset_nic_identity(change.device, network)
            else:
                change = vim.vm.device.VirtualDeviceSpec()
                change.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
                change.device = create_nic_device(network, interface.ethernet_card_type, allocator.next())
            nic_changes.append(change)

        if len(class_nics) > len(interfaces):
            logger.debug(f"Dropping {len(class_nics) - len(interfaces)} class NIC(s) without a network interface")

        config_spec.deviceChange = nic_changes + others
