"""
vSphere client

Thin synchronous wrapper over a pyVmomi session (VM lifecycle, placement,
inventory) and a vSphere Automation REST session (cluster modules,
content library deploy). Every call is bounded by a timeout and every
failure surfaces as an operator error from ``vm_operator.errors``.
"""

import functools
import http.client
import logging
import ssl
import time
from typing import Dict, List, Optional

import requests
import urllib3
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vm_operator.errors import OperationTimeout, RemoteNotFound, TransientRemoteError, VMOperatorError
from vm_operator.models import (
    CreateVMArgs,
    ImageProviderKind,
    NetworkRef,
    ObservedDisk,
    ObservedNic,
    ObservedVM,
    Recommendation,
)
from vm_operator.vsphere.faults import classify_fault
from vm_operator.vsphere.network import CARD_TYPES, backing_identity

logger = logging.getLogger(__name__)

POWER_ON = "powerOn"
POWER_OFF = "powerOff"
SUSPEND = "suspend"

TASK_POLL_SECONDS = 2


def remote_call(action: str):
    """Translate pyVmomi / transport failures of the wrapped call into operator errors."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except VMOperatorError:
                raise
            except vim.fault.NotAuthenticated as e:
                # Reconnect on next use
                self._si = None
                raise classify_fault(e, action) from e
            except (vmodl.MethodFault, requests.RequestException, http.client.HTTPException, OSError) as e:
                raise classify_fault(e, action) from e
        return wrapper
    return decorator


class VSphereClient:
    """
    vCenter connection shared by all reconcile workers.

    pyVmomi stubs are thread safe for independent calls; the session is
    (re)established lazily.
    """

    def __init__(self, host: str, user: str, password: str, port: int = 443,
                 verify_ssl: bool = False, datacenter: str = "", timeout: int = 300):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.verify_ssl = verify_ssl
        self.datacenter = datacenter
        self.timeout = timeout
        self._si = None
        self._rest = None

        if not verify_ssl:
            urllib3.disable_warnings()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @property
    def si(self):
        if self._si is None:
            self._si = self._connect()
        return self._si

    def _connect(self):
        ssl_context = None
        if not self.verify_ssl:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        logger.info(f"Connecting to vCenter {self.host}:{self.port}")
        try:
            si = SmartConnect(
                host=self.host,
                user=self.user,
                pwd=self.password,
                port=self.port,
                sslContext=ssl_context,
                # Socket timeout for every SOAP call made through this session
                httpConnectionTimeout=self.timeout,
            )
        except (vmodl.MethodFault, OSError) as e:
            raise classify_fault(e, f"connect to vCenter {self.host}") from e
        logger.info(f"Connected to vCenter {self.host}")
        return si

    @property
    def rest(self) -> requests.Session:
        if self._rest is None:
            self._rest = self._rest_login()
        return self._rest

    def _rest_login(self) -> requests.Session:
        session = requests.Session()
        session.verify = self.verify_ssl
        response = session.post(
            f"https://{self.host}/api/session",
            auth=(self.user, self.password),
            timeout=30,
        )
        if response.status_code not in (200, 201):
            raise TransientRemoteError(f"vCenter REST login failed: HTTP {response.status_code}")
        # /api/session answers with the bare session id as a JSON string
        session.headers.update({
            'vmware-api-session-id': response.json(),
            'Content-Type': 'application/json',
        })
        return session

    def _rest_request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        response = self.rest.request(method, f"https://{self.host}{path}", **kwargs)
        if response.status_code == 401:
            self._rest = None
            raise TransientRemoteError(f"vCenter REST session expired ({method} {path})")
        if response.status_code == 404:
            raise RemoteNotFound(f"{method} {path}: not found")
        if response.status_code >= 400:
            raise TransientRemoteError(f"{method} {path} failed: HTTP {response.status_code} {response.text}")
        return response

    def close(self):
        if self._si is not None:
            Disconnect(self._si)
            self._si = None
        if self._rest is not None:
            self._rest.close()
            self._rest = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stub(self):
        return self.si._stub

    def _vm(self, moid: str) -> vim.VirtualMachine:
        return vim.VirtualMachine(moid, self._stub())

    def wait_for_task(self, task, timeout: Optional[float] = None):
        """Wait for a vCenter task, returning its result."""
        timeout = timeout or self.timeout
        start_time = time.time()
        while time.time() - start_time < timeout:
            state = task.info.state
            if state == vim.TaskInfo.State.success:
                return task.info.result
            if state == vim.TaskInfo.State.error:
                raise task.info.error
            time.sleep(TASK_POLL_SECONDS)
        raise OperationTimeout(f"task {task._moId} did not finish within {timeout}s")

    def _observe(self, vm_obj) -> ObservedVM:
        config = vm_obj.config
        runtime = vm_obj.runtime

        opaque_names = {
            network.summary.opaqueNetworkId: network.name
            for network in vm_obj.network
            if isinstance(network, vim.OpaqueNetwork)
        }

        disks, nics = [], []
        for device in config.hardware.device:
            label = device.deviceInfo.label if device.deviceInfo else ""
            if isinstance(device, vim.vm.device.VirtualDisk):
                disks.append(ObservedDisk(
                    key=device.key,
                    label=label,
                    controller_key=device.controllerKey,
                    unit_number=device.unitNumber,
                    capacity_bytes=device.capacityInBytes or (device.capacityInKB or 0) * 1024,
                    file_name=getattr(device.backing, 'fileName', '') or '',
                ))
            elif isinstance(device, vim.vm.device.VirtualEthernetCard):
                nics.append(ObservedNic(
                    key=device.key,
                    label=label,
                    network_name=self._backing_network_name(device.backing, opaque_names),
                    network_id=backing_identity(device.backing),
                    card_type=next((name for name, cls in CARD_TYPES.items() if type(device) is cls), ""),
                    mac_address=device.macAddress or "",
                ))

        host = runtime.host
        return ObservedVM(
            moid=vm_obj._moId,
            name=config.name,
            instance_uuid=config.instanceUuid or "",
            bios_uuid=config.uuid or "",
            host=host.name if host else "",
            host_moid=host._moId if host else "",
            resource_pool_moid=vm_obj.resourcePool._moId if vm_obj.resourcePool else "",
            power_state=str(runtime.powerState),
            num_cpus=config.hardware.numCPU,
            memory_mb=config.hardware.memoryMB,
            disks=disks,
            nics=nics,
            extra_config={o.key: str(o.value) for o in config.extraConfig},
            guest_heartbeat=str(vm_obj.guestHeartbeatStatus or ""),
        )

    def _backing_network_name(self, backing, opaque_names: Optional[Dict[str, str]] = None) -> str:
        if isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo):
            portgroup = vim.dvs.DistributedVirtualPortgroup(backing.port.portgroupKey, self._stub())
            return portgroup.name
        if isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo):
            return backing.deviceName or ""
        if isinstance(backing, vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo):
            # NSX segments are named by the OpaqueNetwork the VM is attached to
            opaque_id = backing.opaqueNetworkId or ""
            return (opaque_names or {}).get(opaque_id, opaque_id)
        return ""

    # ------------------------------------------------------------------
    # VM lifecycle
    # ------------------------------------------------------------------

    @remote_call("get VM")
    def get_vm(self, moid: str) -> Optional[ObservedVM]:
        """Fetch the live VM, or None if vCenter no longer has it."""
        try:
            return self._observe(self._vm(moid))
        except vmodl.fault.ManagedObjectNotFound:
            return None

    @remote_call("find VM")
    def find_vm(self, name: str, folder_moid: str = "") -> Optional[ObservedVM]:
        content = self.si.RetrieveContent()
        root = vim.Folder(folder_moid, self._stub()) if folder_moid else content.rootFolder
        container = content.viewManager.CreateContainerView(root, [vim.VirtualMachine], True)
        try:
            for vm_obj in container.view:
                if vm_obj.name == name:
                    return self._observe(vm_obj)
        finally:
            container.Destroy()
        return None

    @remote_call("create VM")
    def create_vm(self, args: CreateVMArgs, config_spec: vim.vm.ConfigSpec,
                  timeout: Optional[float] = None) -> ObservedVM:
        """Create a powered off VM from the image and apply ``config_spec`` to it."""
        logger.info(f"Creating VM {args.name} from {args.image_provider_kind} {args.image_provider_id} "
                    f"in pool {args.resource_pool_moid}")
        if args.image_provider_kind == ImageProviderKind.CONTENT_LIBRARY_ITEM:
            moid = self._deploy_library_item(args, timeout)
            vm_obj = self._vm(moid)
            self.wait_for_task(vm_obj.ReconfigVM_Task(spec=config_spec), timeout)
        else:
            vm_obj = self._clone(args, config_spec, timeout)
        return self._observe(vm_obj)

    def _profile(self, args: CreateVMArgs):
        if not args.storage_policy_id:
            return []
        return [vim.vm.DefinedProfileSpec(profileId=args.storage_policy_id)]

    def _clone(self, args: CreateVMArgs, config_spec, timeout):
        stub = self._stub()
        template_vm = self._vm(args.image_provider_id)

        relocate_spec = vim.vm.RelocateSpec()
        relocate_spec.pool = vim.ResourcePool(args.resource_pool_moid, stub)
        if args.host_moid:
            relocate_spec.host = vim.HostSystem(args.host_moid, stub)
        if args.datastore_moid:
            relocate_spec.datastore = vim.Datastore(args.datastore_moid, stub)
        relocate_spec.profile = self._profile(args)

        if args.thin_provisioned is not None or args.eager_zeroed:
            for device in template_vm.config.hardware.device:
                if not isinstance(device, vim.vm.device.VirtualDisk):
                    continue
                locator = vim.vm.RelocateSpec.DiskLocator(diskId=device.key)
                if args.datastore_moid:
                    locator.datastore = relocate_spec.datastore
                locator.diskBackingInfo = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
                    diskMode='persistent',
                    thinProvisioned=bool(args.thin_provisioned),
                    eagerlyScrub=bool(args.eager_zeroed) and not args.thin_provisioned,
                )
                locator.profile = self._profile(args)
                relocate_spec.disk.append(locator)

        clone_spec = vim.vm.CloneSpec()
        clone_spec.location = relocate_spec
        clone_spec.powerOn = False
        clone_spec.template = False
        clone_spec.config = config_spec

        folder = vim.Folder(args.folder_moid, stub) if args.folder_moid else template_vm.parent
        task = template_vm.Clone(folder=folder, name=args.name, spec=clone_spec)
        cloned_vm = self.wait_for_task(task, timeout)
        if cloned_vm is None:
            raise TransientRemoteError(f"clone of {args.name} completed but no VM returned")
        return cloned_vm

    def _deploy_library_item(self, args: CreateVMArgs, timeout) -> str:
        storage = {}
        if args.storage_policy_id:
            storage['storage_policy'] = {'type': 'USE_SPECIFIED_POLICY', 'policy': args.storage_policy_id}
        if args.datastore_moid:
            storage['datastore'] = args.datastore_moid

        placement = {'resource_pool': args.resource_pool_moid}
        if args.folder_moid:
            placement['folder'] = args.folder_moid
        if args.host_moid:
            placement['host'] = args.host_moid

        body = {
            'name': args.name,
            'placement': placement,
            'vm_home_storage': storage,
            'disk_storage': storage,
            'powered_on': False,
        }
        response = self._rest_request(
            'POST',
            f"/api/vcenter/vm-template/library-items/{args.image_provider_id}?action=deploy",
            json=body,
            timeout=timeout or self.timeout,
        )
        return response.json()

    @remote_call("reconfigure VM")
    def reconfigure(self, moid: str, config_spec: vim.vm.ConfigSpec, timeout: Optional[float] = None):
        logger.info(f"Reconfiguring VM {moid}")
        self.wait_for_task(self._vm(moid).ReconfigVM_Task(spec=config_spec), timeout)

    @remote_call("change VM power state")
    def power_op(self, moid: str, op: str, timeout: Optional[float] = None):
        vm_obj = self._vm(moid)
        logger.info(f"Power operation {op} on VM {moid}")
        if op == POWER_ON:
            task = vm_obj.PowerOnVM_Task()
        elif op == POWER_OFF:
            task = vm_obj.PowerOffVM_Task()
        elif op == SUSPEND:
            task = vm_obj.SuspendVM_Task()
        else:
            raise ValueError(f"unknown power operation {op}")
        self.wait_for_task(task, timeout)

    @remote_call("delete VM")
    def destroy(self, moid: str, timeout: Optional[float] = None):
        """Delete the VM. Raises RemoteNotFound when it is already gone."""
        logger.info(f"Deleting VM {moid}")
        self.wait_for_task(self._vm(moid).Destroy_Task(), timeout)

    # ------------------------------------------------------------------
    # Placement and inventory
    # ------------------------------------------------------------------

    @remote_call("placement recommendation")
    def recommend(self, config_spec: vim.vm.ConfigSpec, candidate_pool_moids: List[str]) -> List[Recommendation]:
        """Ask vCenter where a VM with ``config_spec`` should go, best first."""
        stub = self._stub()
        spec = vim.cluster.PlaceVmsXClusterSpec()
        spec.resourcePools = [vim.ResourcePool(moid, stub) for moid in candidate_pool_moids]
        spec.vmPlacementSpecs = [vim.cluster.PlaceVmsXClusterSpec.VmPlacementSpec(configSpec=config_spec)]
        spec.hostRecommRequired = True

        result = self.si.RetrieveContent().rootFolder.PlaceVmsXCluster(spec)
        for fault in result.faults or []:
            logger.warning(f"Placement fault for pool {fault.resourcePool}: {fault.faults}")

        recommendations = []
        for info in result.placementInfos or []:
            recommendation = info.recommendation
            if recommendation is None:
                continue
            for action in recommendation.action:
                if not isinstance(action, vim.cluster.PlacementAction):
                    continue
                relocate_spec = action.relocateSpec
                host = action.targetHost or (relocate_spec.host if relocate_spec else None)
                datastores = []
                if relocate_spec is not None:
                    if relocate_spec.datastore is not None:
                        datastores.append(relocate_spec.datastore._moId)
                    for disk in relocate_spec.disk:
                        if disk.datastore is not None and disk.datastore._moId not in datastores:
                            datastores.append(disk.datastore._moId)
                pool = relocate_spec.pool if relocate_spec is not None else None
                recommendations.append(Recommendation(
                    resource_pool_moid=pool._moId if pool is not None else candidate_pool_moids[0],
                    host_moid=host._moId if host is not None else "",
                    host_name=host.name if host is not None else "",
                    datastore_moids=datastores,
                ))
        return recommendations

    @remote_call("find network")
    def find_network(self, name: str) -> Optional[NetworkRef]:
        content = self.si.RetrieveContent()
        container = content.viewManager.CreateContainerView(content.rootFolder, [vim.Network], True)
        try:
            for network in container.view:
                if network.name != name:
                    continue
                if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
                    return NetworkRef(
                        moid=network._moId,
                        name=network.name,
                        network_type="DistributedVirtualPortgroup",
                        switch_uuid=network.config.distributedVirtualSwitch.uuid,
                        portgroup_key=network.key,
                    )
                if isinstance(network, vim.OpaqueNetwork):
                    return NetworkRef(moid=network.summary.opaqueNetworkId, name=network.name,
                                      network_type="OpaqueNetwork")
                return NetworkRef(moid=network._moId, name=network.name)
        finally:
            container.Destroy()
        return None

    @remote_call("find child resource pool")
    def find_child_resource_pool(self, parent_moid: str, name: str) -> Optional[str]:
        for child in vim.ResourcePool(parent_moid, self._stub()).resourcePool:
            if child.name == name:
                return child._moId
        return None

    @remote_call("find child folder")
    def find_child_folder(self, parent_moid: str, name: str) -> Optional[str]:
        for child in vim.Folder(parent_moid, self._stub()).childEntity:
            if isinstance(child, vim.Folder) and child.name == name:
                return child._moId
        return None

    # ------------------------------------------------------------------
    # Cluster modules (vSphere Automation REST)
    # ------------------------------------------------------------------

    @remote_call("cluster module members")
    def cluster_module_members(self, module_uuid: str) -> List[str]:
        response = self._rest_request('GET', f"/api/vcenter/cluster/modules/{module_uuid}/members")
        return list(response.json().get('vms', []))

    @remote_call("add cluster module member")
    def add_cluster_module_member(self, module_uuid: str, vm_moid: str) -> bool:
        """Add the VM to the module; no-op when it already is a member."""
        if vm_moid in self.cluster_module_members(module_uuid):
            return False
        logger.info(f"Adding VM {vm_moid} to cluster module {module_uuid}")
        response = self._rest_request(
            'POST',
            f"/api/vcenter/cluster/modules/{module_uuid}/members?action=add",
            json={'vms': [vm_moid]},
        )
        result: Dict = response.json() if response.content else {}
        if result.get('success') is False:
            raise TransientRemoteError(f"vCenter refused to add VM {vm_moid} to cluster module {module_uuid}")
        return True
