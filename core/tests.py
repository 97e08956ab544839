from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from core.models import AccessEntry, AuditLog


class AccessListSignInTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username="maria",
            email="Maria@Taller.bo",
            password="pass1234",
        )

    def _sign_in(self, username="maria", password="pass1234"):
        return self.client.post("/api/v1/token/", {"username": username, "password": password}, format="json")

    def test_sign_in_requires_active_access_entry(self):
        response = self._sign_in()

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")

    def test_inactive_entry_is_rejected_and_logged(self):
        AccessEntry.objects.create(email="maria@taller.bo", role=AccessEntry.Role.EMPLOYEE, active=False)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self._sign_in()

        self.assertEqual(response.status_code, 401)
        self.assertTrue(any("not_in_access_list" in message for message in cm.output))

    def test_token_carries_role_and_display_name(self):
        AccessEntry.objects.create(email="MARIA@taller.bo", role=AccessEntry.Role.ADMIN, display_name="María")

        response = self._sign_in(username="maria@taller.bo")

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "admin")
        self.assertEqual(token["display_name"], "María")
        self.assertEqual(token["email"], "maria@taller.bo")

    def test_superuser_signs_in_without_access_entry(self):
        self.user_model.objects.create_superuser(username="root", email="root@taller.bo", password="pass1234")

        response = self._sign_in(username="root")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(AccessToken(response.json()["access"])["role"], "admin")


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.employee = self.user_model.objects.create_user(
            username="empleado", email="empleado@taller.bo", password="pass1234"
        )
        self.admin = self.user_model.objects.create_user(username="jefe", email="jefe@taller.bo", password="pass1234")
        self.outsider = self.user_model.objects.create_user(
            username="outsider", email="outsider@taller.bo", password="pass1234"
        )
        AccessEntry.objects.create(email="empleado@taller.bo", role=AccessEntry.Role.EMPLOYEE)
        AccessEntry.objects.create(email="jefe@taller.bo", role=AccessEntry.Role.ADMIN)

    def test_employee_cannot_manage_access_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.employee)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post(
                "/api/v1/admin/access/",
                {"email": "nuevo@taller.bo", "role": "employee"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_user_outside_access_list_is_forbidden_everywhere(self):
        self.client.force_authenticate(user=self.outsider)

        response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 403)

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/orders/", HTTP_X_REQUEST_ID="req-401")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "request_id", "status"])
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["request_id"], "req-401")


class AccessEntryAdminTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="jefe", email="jefe@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="jefe@taller.bo", role=AccessEntry.Role.ADMIN)
        self.client.force_authenticate(user=self.admin)

    def test_create_entry_with_password_creates_login_and_audit_log(self):
        response = self.client.post(
            "/api/v1/admin/access/",
            {"email": "Caja@Taller.bo", "role": "employee", "display_name": "Caja", "password": "caja-segura-123"},
            format="json",
            HTTP_X_REQUEST_ID="req-access",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["email"], "caja@taller.bo")
        self.assertNotIn("password", response.json())
        user = self.user_model.objects.get(email="caja@taller.bo")
        self.assertTrue(user.check_password("caja-segura-123"))
        log = AuditLog.objects.get(action="access.create", request_id="req-access")
        self.assertEqual(log.entity_id, "caja@taller.bo")
        self.assertNotIn("password", log.after_snapshot)

    def test_duplicate_email_is_rejected(self):
        response = self.client.post("/api/v1/admin/access/", {"email": "JEFE@taller.bo", "role": "admin"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["errors"])

    def test_deactivate_entry_by_email(self):
        AccessEntry.objects.create(email="caja@taller.bo", role=AccessEntry.Role.EMPLOYEE)

        response = self.client.patch("/api/v1/admin/access/caja@taller.bo/", {"active": False}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(AccessEntry.objects.get(email="caja@taller.bo").active)
        self.assertTrue(AuditLog.objects.filter(action="access.update", entity_id="caja@taller.bo").exists())

    def test_email_cannot_be_changed(self):
        AccessEntry.objects.create(email="caja@taller.bo", role=AccessEntry.Role.EMPLOYEE)

        response = self.client.patch(
            "/api/v1/admin/access/caja@taller.bo/", {"email": "otra@taller.bo"}, format="json"
        )

        self.assertEqual(response.status_code, 400)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="jefe", email="jefe@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="jefe@taller.bo", role=AccessEntry.Role.ADMIN)
        self.client.force_authenticate(user=self.admin)

    def test_audit_logs_are_read_only(self):
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity_and_export(self):
        AuditLog.objects.create(action="order.create", entity="order", entity_id="o-1", actor=self.admin)
        AuditLog.objects.create(action="journal.create", entity="journal", entity_id="j-1", actor=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/?entity=order")
        export = self.client.get("/api/v1/admin/audit-logs/export/?entity=order")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["entity_id"] for item in response.json()["results"]], ["o-1"])
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export["Content-Type"], "text/csv")
        body = export.content.decode()
        self.assertIn("o-1", body)
        self.assertNotIn("j-1", body)


class HealthCheckTests(TestCase):
    def test_health_and_readiness_are_public(self):
        client = APIClient()

        health = client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")
        ready = client.get("/api/v1/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json(), {"status": "ok", "request_id": "req-health"})
        self.assertEqual(health["X-Request-ID"], "req-health")
        self.assertEqual(ready.status_code, 200)
        self.assertEqual(ready.json()["status"], "ready")
