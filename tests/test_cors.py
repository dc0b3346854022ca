import unittest

from utils.cors import CorsSettings, _is_local_origin, _origin_matches, build_cors_headers


class DummyRequest:
    def __init__(self, origin=None, requested_headers=None):
        self.headers = {}
        if origin:
            self.headers["Origin"] = origin
        if requested_headers:
            self.headers["Access-Control-Request-Headers"] = requested_headers


class CorsTests(unittest.TestCase):
    def test_matches_with_trailing_slash_and_case(self):
        self.assertTrue(_origin_matches("https://crm.example.com", "https://CRM.example.com/"))

    def test_matches_wildcard_subdomain(self):
        self.assertTrue(_origin_matches("https://app.example.com", "https://*.example.com"))
        self.assertFalse(_origin_matches("https://example-evil.com", "https://*.example.com"))

    def test_scheme_and_port_are_enforced_when_configured(self):
        self.assertTrue(_origin_matches("https://crm.example.com:8443", "https://crm.example.com:8443"))
        self.assertFalse(_origin_matches("https://crm.example.com:8444", "https://crm.example.com:8443"))
        self.assertFalse(_origin_matches("http://crm.example.com", "https://crm.example.com"))

    def test_host_only_entry_matches_http_and_https(self):
        self.assertTrue(_origin_matches("http://crm.example.com", "crm.example.com"))
        self.assertTrue(_origin_matches("https://crm.example.com", "crm.example.com"))

    def test_local_origin(self):
        self.assertTrue(_is_local_origin("http://localhost:5173"))
        self.assertTrue(_is_local_origin("https://127.0.0.1:5173"))
        self.assertFalse(_is_local_origin("https://crm.example.com"))

    def test_allowed_origin_gets_headers(self):
        settings = CorsSettings(["https://crm.example.com"], allow_credentials=True, allow_localhost=False)
        headers = build_cors_headers(DummyRequest("https://crm.example.com", "X-Trace"), ["patch"], settings)

        self.assertEqual(headers["Access-Control-Allow-Origin"], "https://crm.example.com")
        self.assertEqual(headers["Access-Control-Allow-Methods"], "PATCH, OPTIONS")
        self.assertIn("X-Trace", headers["Access-Control-Allow-Headers"])
        self.assertEqual(headers["Access-Control-Allow-Credentials"], "true")

    def test_disallowed_origin_gets_only_vary(self):
        settings = CorsSettings(["https://crm.example.com"], allow_credentials=False, allow_localhost=False)
        headers = build_cors_headers(DummyRequest("https://other.example.org"), ["GET"], settings)
        self.assertEqual(headers, {"Vary": "Origin"})

    def test_wildcard_without_credentials(self):
        settings = CorsSettings(["*"], allow_credentials=False, allow_localhost=True)
        headers = build_cors_headers(DummyRequest("https://anything.example.org"), ["GET", "GET"], settings)
        self.assertEqual(headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(headers["Access-Control-Allow-Methods"], "GET, OPTIONS")


if __name__ == "__main__":
    unittest.main()
