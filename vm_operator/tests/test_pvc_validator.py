import json
import unittest
from datetime import datetime, timezone

from vm_operator.constants import INSTANCE_STORAGE_LABEL_KEY, REQUESTED_TOPOLOGY_ANNOTATION_KEY, ZONE_LABEL_KEY
from vm_operator.store import InMemoryStore
from vm_operator.tests.fakes import admission_review, make_zone, pvc_object
from vm_operator.webhooks.common import AdmissionRequest, PrivilegedAccounts
from vm_operator.webhooks.persistentvolumeclaim import PersistentVolumeClaimValidator

IS_LABELS = {INSTANCE_STORAGE_LABEL_KEY: "true"}
LABEL_PATH = f"metadata.labels[{INSTANCE_STORAGE_LABEL_KEY}]"


def request(operation, obj=None, old_obj=None, username="dev@example.com") -> AdmissionRequest:
    return AdmissionRequest.from_review(admission_review(operation, obj, old_obj, username=username))


def topology(*zones) -> dict:
    return {REQUESTED_TOPOLOGY_ANNOTATION_KEY: json.dumps([{ZONE_LABEL_KEY: z} for z in zones])}


class PersistentVolumeClaimValidatorTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.validator = PersistentVolumeClaimValidator(self.store, PrivilegedAccounts(["ops@example.com"]))

    def test_create_with_instance_storage_label_denied(self):
        response = self.validator.validate(request("CREATE", pvc_object(labels=IS_LABELS)))

        self.assertFalse(response.allowed)
        self.assertEqual(response.code, 403)
        self.assertEqual(response.reasons, [
            f"{LABEL_PATH}: Forbidden: CREATE operation on PVC with instance storage label is not allowed",
        ])

    def test_create_without_label_allowed(self):
        self.assertTrue(self.validator.validate(request("CREATE", pvc_object())).allowed)

    def test_update_adding_label_denied(self):
        response = self.validator.validate(request("UPDATE", pvc_object(labels=IS_LABELS), pvc_object()))

        self.assertFalse(response.allowed)
        self.assertEqual(response.reasons, [f"{LABEL_PATH}: Forbidden: adding instance storage label is not allowed"])

    def test_update_of_labelled_claim_denied_even_if_label_removed(self):
        for new_labels in (IS_LABELS, {}, {INSTANCE_STORAGE_LABEL_KEY: "false"}):
            with self.subTest(new_labels=new_labels):
                response = self.validator.validate(
                    request("UPDATE", pvc_object(labels=new_labels), pvc_object(labels=IS_LABELS))
                )
                self.assertFalse(response.allowed)
                self.assertIn("UPDATE operation on PVC with instance storage label is not allowed", response.reason)

    def test_update_of_plain_claim_allowed(self):
        response = self.validator.validate(
            request("UPDATE", pvc_object(labels={"app": "db"}), pvc_object())
        )
        self.assertTrue(response.allowed)

    def test_delete_of_labelled_claim_denied(self):
        response = self.validator.validate(request("DELETE", old_obj=pvc_object(labels=IS_LABELS)))

        self.assertFalse(response.allowed)
        self.assertIn("operation on PVC with instance storage label is not allowed", response.reason)
        review = response.to_review()
        self.assertEqual(review["response"]["uid"], "req-1")
        self.assertEqual(review["response"]["status"]["code"], 403)

    def test_delete_of_plain_claim_allowed(self):
        self.assertTrue(self.validator.validate(request("DELETE", old_obj=pvc_object())).allowed)

    def test_privileged_callers_bypass(self):
        for username in (
            "kubernetes-admin",
            "system:serviceaccount:vmware-system-vmop:vmware-system-vmop-default",
            "system:serviceaccount:kube-system:persistent-volume-binder",
            "ops@example.com",
        ):
            with self.subTest(username=username):
                self.assertTrue(self.validator.validate(
                    request("DELETE", old_obj=pvc_object(labels=IS_LABELS), username=username)
                ).allowed)
                self.assertTrue(self.validator.validate(
                    request("CREATE", pvc_object(labels=IS_LABELS), username=username)
                ).allowed)

    def test_privileged_users_are_injected_not_global(self):
        validator = PersistentVolumeClaimValidator(self.store, PrivilegedAccounts())

        response = validator.validate(
            request("DELETE", old_obj=pvc_object(labels=IS_LABELS), username="ops@example.com")
        )

        self.assertFalse(response.allowed)


class RequestedZoneTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.store.create(make_zone("zone-a"))
        gone = make_zone("zone-gone")
        gone.metadata.deletion_timestamp = datetime.now(timezone.utc)
        self.store.create(gone)
        self.validator = PersistentVolumeClaimValidator(self.store, PrivilegedAccounts(),
                                                        workload_domain_isolation=True)

    def test_existing_zone_allowed(self):
        response = self.validator.validate(request("CREATE", pvc_object(annotations=topology("zone-a"))))
        self.assertTrue(response.allowed)

    def test_zone_being_deleted_denied(self):
        response = self.validator.validate(request("CREATE", pvc_object(annotations=topology("zone-gone"))))

        self.assertFalse(response.allowed)
        self.assertEqual(response.reasons, [
            'metadata.annotation: Invalid value: "my-claim": cannot use zone that is being deleted',
        ])

    def test_missing_zone_denied(self):
        response = self.validator.validate(request("CREATE", pvc_object(annotations=topology("zone-x"))))

        self.assertFalse(response.allowed)
        self.assertIn("Zone ns/zone-x not found", response.reason)

    def test_malformed_annotation_denied(self):
        annotations = {REQUESTED_TOPOLOGY_ANNOTATION_KEY: "[{not json"}
        response = self.validator.validate(request("CREATE", pvc_object(annotations=annotations)))

        self.assertFalse(response.allowed)
        self.assertIn("failed to parse annotation", response.reason)

    def test_zone_check_off_without_feature(self):
        validator = PersistentVolumeClaimValidator(self.store, PrivilegedAccounts())
        response = validator.validate(request("CREATE", pvc_object(annotations=topology("zone-gone"))))
        self.assertTrue(response.allowed)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
