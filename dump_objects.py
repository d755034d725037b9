#!/usr/bin/env python3
"""Dump Salesforce object metadata to outputs/{Object}/{object}_metadata.json.

Logs in with the SOAP partner API (username + password + security token taken
from SF_USERNAME, SF_PASSWORD and SF_SECURITY_TOKEN), then calls the REST
describe endpoints for each requested object.

Usage:
    python dump_objects.py Account Custom_Deal__c
    python dump_objects.py --all
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from xml.etree import ElementTree
from xml.sax.saxutils import escape

from generate_migration import artifact_path, load_config, write_text

SOAP_NS = "urn:partner.soap.sforce.com"
LOGIN_ENVELOPE = """<?xml version="1.0" encoding="utf-8"?>
<env:Envelope xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:env="http://schemas.xmlsoap.org/soap/envelope/">
  <env:Body>
    <n1:login xmlns:n1="urn:partner.soap.sforce.com">
      <n1:username>{username}</n1:username>
      <n1:password>{password}</n1:password>
    </n1:login>
  </env:Body>
</env:Envelope>
"""


@dataclasses.dataclass(frozen=True)
class Session:
    session_id: str
    instance_url: str
    api_version: str

    def data_url(self, path: str) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}/{path.lstrip('/')}"


def http_request(url: str, data: bytes | None = None, headers: dict[str, str] | None = None) -> str:
    req = urllib.request.Request(url, data=data, headers=headers or {}, method="POST" if data else "GET")
    try:
        with urllib.request.urlopen(req, timeout=30) as resp:
            return resp.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"Salesforce request failed ({e.code}) for {url}: {body}") from e
    except urllib.error.URLError as e:
        raise RuntimeError(f"Error connecting to Salesforce at {url}: {e}") from e


def parse_login_response(body: str, api_version: str) -> Session:
    root = ElementTree.fromstring(body)
    session_id = root.findtext(f".//{{{SOAP_NS}}}sessionId")
    server_url = root.findtext(f".//{{{SOAP_NS}}}serverUrl")
    if not session_id or not server_url:
        fault = root.findtext(".//faultstring") or "no session in login response"
        raise RuntimeError(f"Salesforce login failed: {fault}")
    parts = urllib.parse.urlsplit(server_url)
    return Session(session_id=session_id, instance_url=f"{parts.scheme}://{parts.netloc}", api_version=api_version)


def login(login_url: str, api_version: str, username: str, password: str, security_token: str = "") -> Session:
    envelope = LOGIN_ENVELOPE.format(username=escape(username), password=escape(password + security_token))
    url = f"{login_url.rstrip('/')}/services/Soap/u/{api_version}"
    headers = {"Content-Type": "text/xml; charset=UTF-8", "SOAPAction": "login"}
    try:
        body = http_request(url, envelope.encode("utf-8"), headers)
    except RuntimeError as e:
        raise RuntimeError(f"Salesforce login failed: {e}") from e
    return parse_login_response(body, api_version)


def get_json(session: Session, path: str) -> dict:
    headers = {"Authorization": f"Bearer {session.session_id}", "Accept": "application/json"}
    return json.loads(http_request(session.data_url(path), headers=headers))


def list_objects(session: Session) -> list[str]:
    result = get_json(session, "sobjects/")
    return [str(o["name"]) for o in result.get("sobjects", []) if o.get("name")]


def describe_object(session: Session, object_name: str) -> dict:
    return get_json(session, f"sobjects/{urllib.parse.quote(object_name)}/describe/")


def dump_objects(session: Session, object_names: list[str], output_dir: Path, known: list[str]) -> int:
    write_text(output_dir / "objects.json", json.dumps(known, indent=2) + "\n")
    for i, name in enumerate(object_names, 1):
        print(f"  [{i}/{len(object_names)}] {name}", flush=True)
        metadata = describe_object(session, name)
        write_text(artifact_path(output_dir, name, "metadata"), json.dumps(metadata, indent=2) + "\n")
    return len(object_names)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dump Salesforce object metadata")
    parser.add_argument("objects", nargs="*", help="Salesforce object names to dump")
    parser.add_argument("--all", action="store_true", help="Dump every object in the org")
    parser.add_argument("--config", default="force2pg.yaml", help="YAML configuration file")
    parser.add_argument("--output-dir", help="Artifact directory (default from config)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = load_config(Path(args.config))
    output_dir = Path(args.output_dir or config["output_dir"])
    sf_cfg = config["salesforce"]

    username = os.environ.get("SF_USERNAME", "")
    if not username:
        print("SF_USERNAME is not set", file=sys.stderr)
        return 1

    try:
        session = login(
            sf_cfg["login_url"],
            str(sf_cfg["api_version"]),
            username,
            os.environ.get("SF_PASSWORD", ""),
            os.environ.get("SF_SECURITY_TOKEN", ""),
        )
        known = list_objects(session)
        object_names = known if args.all else (args.objects or list(config.get("objects") or []))
        if not object_names:
            print("Please specify object names or use --all.", file=sys.stderr)
            return 1
        total = dump_objects(session, object_names, output_dir, known)
    except RuntimeError as e:
        print(e, file=sys.stderr)
        return 1

    print(f"\nTotal: {total} objects written to {output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
