import contextlib
import io
import json
import tempfile
import unittest
import urllib.error
from pathlib import Path
from unittest import mock

from dump_objects import Session, dump_objects, http_request, list_objects, login, parse_login_response

LOGIN_OK = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    'xmlns="urn:partner.soap.sforce.com">'
    "<soapenv:Body><loginResponse><result>"
    "<serverUrl>https://na1.salesforce.com/services/Soap/u/59.0/00D000000000001</serverUrl>"
    "<sessionId>SESSION</sessionId>"
    "</result></loginResponse></soapenv:Body></soapenv:Envelope>"
)

LOGIN_FAULT = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
    "<soapenv:Body><soapenv:Fault>"
    "<faultcode>INVALID_LOGIN</faultcode>"
    "<faultstring>INVALID_LOGIN: Invalid username, password, security token</faultstring>"
    "</soapenv:Fault></soapenv:Body></soapenv:Envelope>"
)

SESSION = Session(session_id="SESSION", instance_url="https://na1.salesforce.com", api_version="59.0")


class TestLogin(unittest.TestCase):
    def test_parses_session(self) -> None:
        session = parse_login_response(LOGIN_OK, "59.0")
        self.assertEqual(session, SESSION)
        self.assertEqual(session.data_url("sobjects/"), "https://na1.salesforce.com/services/data/v59.0/sobjects/")

    def test_fault_raises(self) -> None:
        with self.assertRaisesRegex(RuntimeError, "INVALID_LOGIN"):
            parse_login_response(LOGIN_FAULT, "59.0")

    def test_login_sends_password_with_token(self) -> None:
        with mock.patch("dump_objects.http_request", return_value=LOGIN_OK) as req:
            session = login("https://test.salesforce.com/", "59.0", "me@example.com", "p&w", "TOKEN")
        self.assertEqual(session.session_id, "SESSION")
        url, body, headers = req.call_args[0]
        self.assertEqual(url, "https://test.salesforce.com/services/Soap/u/59.0")
        self.assertIn(b"<n1:password>p&amp;wTOKEN</n1:password>", body)
        self.assertEqual(headers["SOAPAction"], "login")

    def test_connection_errors_become_runtime_errors(self) -> None:
        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertRaisesRegex(RuntimeError, "Error connecting to Salesforce"):
                http_request("https://na1.salesforce.com/services/data/v59.0/sobjects/")


class TestDescribe(unittest.TestCase):
    def test_list_objects(self) -> None:
        payload = json.dumps({"sobjects": [{"name": "Account"}, {"name": "Custom_Deal__c"}, {"label": "nameless"}]})
        with mock.patch("dump_objects.http_request", return_value=payload) as req:
            self.assertEqual(list_objects(SESSION), ["Account", "Custom_Deal__c"])
        self.assertEqual(req.call_args[0][0], "https://na1.salesforce.com/services/data/v59.0/sobjects/")
        self.assertEqual(req.call_args[1]["headers"]["Authorization"], "Bearer SESSION")

    def test_dump_writes_metadata_files(self) -> None:
        def describe(session, name):
            return {"name": name, "fields": [{"name": "Name", "type": "string"}]}

        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "outputs"
            with mock.patch("dump_objects.describe_object", side_effect=describe), contextlib.redirect_stdout(io.StringIO()):
                total = dump_objects(SESSION, ["Account", "Custom_Deal__c"], out, ["Account", "Custom_Deal__c", "User"])
            self.assertEqual(total, 2)
            self.assertEqual(json.loads((out / "objects.json").read_text()), ["Account", "Custom_Deal__c", "User"])
            metadata = json.loads((out / "Custom_Deal__c" / "custom_deal__c_metadata.json").read_text())
            self.assertEqual(metadata["name"], "Custom_Deal__c")


if __name__ == "__main__":
    unittest.main()
