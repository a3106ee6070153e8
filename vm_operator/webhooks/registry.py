"""Static table of admission validators keyed by resource kind."""

from typing import Dict

from vm_operator.config import Settings
from vm_operator.webhooks.common import PrivilegedAccounts, Validator
from vm_operator.webhooks.persistentvolumeclaim import PersistentVolumeClaimValidator
from vm_operator.webhooks.virtualmachine import VirtualMachineValidator

VALIDATORS = {
    PersistentVolumeClaimValidator.kind: PersistentVolumeClaimValidator,
    VirtualMachineValidator.kind: VirtualMachineValidator,
}


def build_validators(store, config: Settings) -> Dict[str, Validator]:
    """Instantiate every validator in the table with its collaborators."""
    privileged = PrivilegedAccounts(config.privileged_users)
    return {kind: cls.from_config(store, privileged, config) for kind, cls in VALIDATORS.items()}
