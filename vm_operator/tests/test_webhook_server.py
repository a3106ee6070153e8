import time
import unittest

from fastapi.testclient import TestClient

from vm_operator import __version__
from vm_operator.config import Settings
from vm_operator.constants import INSTANCE_STORAGE_LABEL_KEY
from vm_operator.models import AdvancedOptions, ObjectMeta, StorageQuota, StorageQuotaSpec
from vm_operator.store import InMemoryStore
from vm_operator.tests.fakes import NAMESPACE, admission_review, make_vm, pvc_object, vm_object
from vm_operator.webhooks.server import create_app

PVC_PATH = "/default-validate--v1-persistentvolumeclaim"
VM_PATH = "/default-validate-vmoperator-vmware-com-v1alpha1-virtualmachine"
QUOTA_PATH = "/validate-storage-quota"

IS_LABELS = {INSTANCE_STORAGE_LABEL_KEY: "true"}


class SlowValidator:
    def validate(self, request):
        time.sleep(0.5)


class BrokenValidator:
    def validate(self, request):
        raise RuntimeError("store unreachable")


class WebhookServerTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.config = Settings(
            webhook_timeout_seconds=0.2,
            webhook_failure_policy="Fail",
            privileged_users=["ops@example.com"],
        )
        self.app = create_app(self.store, self.config)
        self.client = TestClient(self.app)

    def post(self, path, review):
        response = self.client.post(path, json=review)
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_health(self):
        response = self.client.get("/v1/health")

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "healthy")
        self.assertEqual(data["version"], __version__)
        self.assertEqual(data["validators"], ["PersistentVolumeClaim", "VirtualMachine", "StorageQuota"])
        self.assertEqual(data["failure_policy"], "Fail")

    def test_pvc_delete_denied(self):
        review = self.post(PVC_PATH, admission_review("DELETE", old_obj=pvc_object(labels=IS_LABELS)))

        self.assertEqual(review["apiVersion"], "admission.k8s.io/v1")
        self.assertEqual(review["kind"], "AdmissionReview")
        response = review["response"]
        self.assertEqual(response["uid"], "req-1")
        self.assertFalse(response["allowed"])
        self.assertEqual(response["status"]["code"], 403)
        self.assertIn("operation on PVC with instance storage label is not allowed", response["status"]["reason"])

    def test_configured_privileged_user_allowed(self):
        review = self.post(PVC_PATH, admission_review(
            "DELETE", old_obj=pvc_object(labels=IS_LABELS), username="ops@example.com",
        ))

        self.assertTrue(review["response"]["allowed"])
        self.assertNotIn("status", review["response"])

    def test_vm_endpoint(self):
        review = self.post(VM_PATH, admission_review(
            "CREATE", vm_object(labels={"topology.kubernetes.io/zone": "zone-x"}), kind="VirtualMachine",
        ))

        self.assertFalse(review["response"]["allowed"])
        self.assertIn("Not found", review["response"]["status"]["reason"])

    def test_storage_quota_endpoint(self):
        self.store.create(StorageQuota(
            metadata=ObjectMeta(name="gold-quota", namespace=NAMESPACE),
            spec=StorageQuotaSpec(storage_class="gold", hard="10Gi"),
        ))
        vm = make_vm()
        vm.spec.advanced_options = AdvancedOptions(boot_disk_capacity="20Gi")

        review = self.post(QUOTA_PATH, admission_review("CREATE", vm_object(vm), kind="VirtualMachine"))

        self.assertFalse(review["response"]["allowed"])
        self.assertIn("insufficient quota", review["response"]["status"]["reason"])

    def test_malformed_review_rejected(self):
        response = self.client.post(PVC_PATH, content=b"not json", headers={"Content-Type": "application/json"})
        self.assertEqual(response.status_code, 400)

        response = self.client.post(PVC_PATH, json={"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview"})
        self.assertEqual(response.status_code, 400)

    def test_timeout_denies_under_fail_policy(self):
        self.app.state.validators["PersistentVolumeClaim"] = SlowValidator()

        review = self.post(PVC_PATH, admission_review("CREATE", pvc_object()))

        self.assertFalse(review["response"]["allowed"])
        self.assertEqual(review["response"]["status"]["code"], 500)
        self.assertIn("timed out", review["response"]["status"]["reason"])

    def test_internal_error_allowed_under_ignore_policy(self):
        self.app.state.failure_policy = "Ignore"
        self.app.state.validators["PersistentVolumeClaim"] = BrokenValidator()

        review = self.post(PVC_PATH, admission_review("CREATE", pvc_object()))

        self.assertTrue(review["response"]["allowed"])
        self.assertEqual(review["response"]["warnings"], ["internal error: store unreachable"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
