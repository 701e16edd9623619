from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.test import APIClient
from unittest.mock import patch

from api import rbac
from api.authentication import BearerOrDevAuthentication, Principal, _parse_roles


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="property-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="admin-7",
        DEV_AUTH_USERNAME="office",
        DEV_AUTH_ROLES=["admin"],
        DEBUG=True,
    )
    def test_whoami_dev_admin(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "admin-7")
        self.assertEqual(body["username"], "office")
        self.assertEqual(body["roles"], ["ADMIN"])
        self.assertIn(rbac.PERM_REQUEST_APPROVE, body["permissions"])
        self.assertNotIn(rbac.PERM_REQUEST_SUBMIT, body["permissions"])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="teacher-3",
        DEV_AUTH_USERNAME="",
        DEV_AUTH_ROLES=["TEACHER"],
        DEBUG=True,
    )
    def test_whoami_dev_teacher(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["username"], "teacher-3")
        self.assertIn(rbac.PERM_REQUEST_RETURN, body["permissions"])
        self.assertNotIn(rbac.PERM_BUDGET_VIEW, body["permissions"])

    @override_settings(AUTH_ENABLED=False, DEV_AUTH_ENABLED=False)
    def test_requisition_endpoints_refuse_anonymous(self) -> None:
        response = self.client.get("/api/v1/requisitions/requests/")

        self.assertIn(response.status_code, (401, 403))


@override_settings(
    AUTH_ENABLED=True,
    DEV_AUTH_ENABLED=False,
    AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
    AUTH_USER_ID_CLAIM="sub",
    AUTH_USERNAME_CLAIM="preferred_username",
    AUTH_ROLES_CLAIM="roles",
)
class BearerAuthenticationTests(SimpleTestCase):
    def _request(self, header=None):
        meta = {}
        if header is not None:
            meta["HTTP_AUTHORIZATION"] = header
        return type("Request", (), {"META": meta})()

    def test_missing_header_fails(self) -> None:
        with self.assertRaises(AuthenticationFailed):
            BearerOrDevAuthentication().authenticate(self._request())

    @patch("api.authentication._verify_jwt_with_jwks")
    def test_claims_become_principal(self, mock_verify) -> None:
        mock_verify.return_value = {
            "sub": "u-42",
            "preferred_username": "teacher42",
            "roles": "TEACHER, ADMIN",
        }

        principal, _ = BearerOrDevAuthentication().authenticate(self._request("Bearer abc"))

        self.assertEqual(principal.user_id, "u-42")
        self.assertEqual(principal.display_name, "teacher42")
        self.assertEqual(principal.roles, ["TEACHER", "ADMIN"])
        mock_verify.assert_called_once_with("abc", "https://issuer.example/.well-known/jwks.json")

    @patch("api.authentication._verify_jwt_with_jwks")
    def test_token_without_user_id_fails(self, mock_verify) -> None:
        mock_verify.return_value = {"roles": ["TEACHER"]}

        with self.assertRaises(AuthenticationFailed):
            BearerOrDevAuthentication().authenticate(self._request("Bearer abc"))

    def test_parse_roles(self) -> None:
        self.assertEqual(_parse_roles(None), [])
        self.assertEqual(_parse_roles("ADMIN"), ["ADMIN"])
        self.assertEqual(_parse_roles(["A", 2]), ["A", "2"])


class RbacTests(SimpleTestCase):
    def test_roles_are_normalized_and_deduplicated(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(user_id="u1", username=None, roles=[" teacher", "TEACHER", ""])

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(roles, ["TEACHER"])
        self.assertEqual(permissions, sorted(permissions))
        self.assertIn(rbac.PERM_REQUEST_SUBMIT, permissions)

    def test_unknown_roles_grant_nothing(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(user_id="u1", username=None, roles=["JANITOR"])

        _, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(permissions, [])

    @patch("api.rbac._permissions_for_roles", return_value=["requisitions.request.view_all"])
    def test_resolution_is_cached_per_request(self, mock_permissions_for_roles) -> None:
        request = type("Request", (), {})()
        principal = Principal(user_id="u1", username=None, roles=["ADMIN"])

        rbac.resolve_roles_and_permissions(request, principal)
        rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(mock_permissions_for_roles.call_count, 1)
