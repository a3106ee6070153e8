"""
VM Operator - converges VirtualMachine resources onto vSphere.

Provides:
- Convergence reconciler (create / update / delete of vSphere VMs)
- Zone placement and instance storage handling
- Admission webhooks guarding writes to VM and PVC resources
"""

__version__ = "1.0.0"
