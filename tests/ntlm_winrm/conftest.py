# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import datetime
import http.server
import ipaddress
import socket
import ssl
import threading
import time
import typing

import pytest
import spnego
import spnego.exceptions

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ntlm_winrm import Endpoint

PROXY_ENV_VARS = ["HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "ALL_PROXY"]

NEGOTIATE_TOKEN = b"negotiate"
CHALLENGE_TOKEN = b"challenge"
AUTHENTICATE_TOKEN = b"authenticate"

RESPONSE_BODY = "<s:Envelope><s:Body>response</s:Body></s:Envelope>"


def negotiate_header(token: bytes) -> str:
    return "Negotiate " + base64.b64encode(token).decode()


class RecordedRequest(typing.NamedTuple):
    method: str
    path: str
    headers: typing.Dict[str, str]
    body: bytes
    connection: int

    @property
    def authorization(self) -> typing.Optional[str]:
        return self.headers.get("Authorization")


class WinRMHandler(http.server.BaseHTTPRequestHandler):
    """Plays the WinRM service, the NTLM state is kept per connection."""

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def setup(self):
        super().setup()
        self.authenticated = False
        with self.server.lock:
            self.server.connections += 1
            self.connection_id = self.server.connections

    def do_CONNECT(self):
        self._record(b"")
        self._send(407, headers={"Proxy-Authenticate": 'Basic realm="proxy"'})

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        self._record(self.rfile.read(length))

        mode = self.server.mode
        auth = self.headers.get("Authorization", "")

        if mode == "anonymous":
            self._reply()

        elif mode == "basic":
            if auth == self.server.basic_header:
                self._reply()
            else:
                self._send(401, headers={"WWW-Authenticate": 'Basic realm="WSMAN"'})

        elif mode == "no_challenge":
            self._send(401, headers={"WWW-Authenticate": "Negotiate"})

        elif self.authenticated and not auth:
            if self.server.drop_auth:
                self.server.drop_auth = False
                self.authenticated = False
                self._send(401, headers={"WWW-Authenticate": "Negotiate"})
            else:
                self._reply()

        elif auth == negotiate_header(NEGOTIATE_TOKEN):
            self._send(401, headers={"WWW-Authenticate": self.server.challenge_header})

        elif auth == negotiate_header(AUTHENTICATE_TOKEN) and self.server.accept:
            self.authenticated = True
            self._reply()

        else:
            self._send(401, headers={"WWW-Authenticate": "Negotiate"})

    def _record(self, body: bytes) -> None:
        request = RecordedRequest(self.command, self.path, dict(self.headers.items()), body, self.connection_id)
        with self.server.lock:
            self.server.requests.append(request)

    def _reply(self) -> None:
        if self.server.delay:
            time.sleep(self.server.delay)

        if self.server.redirect and self.path != self.server.redirect:
            self.close_connection = True
            self._send(307, headers={"Location": self.server.redirect, "Connection": "close"})
            return

        headers = {"Content-Type": "application/soap+xml;charset=UTF-8"}
        if self.server.close_after_reply:
            headers["Connection"] = "close"
            self.close_connection = True

        self._send(self.server.status, self.server.response_body.encode("utf-8"), headers)

    def _send(
        self,
        status: int,
        body: bytes = b"",
        headers: typing.Optional[typing.Dict[str, str]] = None,
    ) -> None:
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class WinRMServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, ssl_context: typing.Optional[ssl.SSLContext] = None):
        super().__init__(("127.0.0.1", 0), WinRMHandler)
        if ssl_context:
            self.socket = ssl_context.wrap_socket(self.socket, server_side=True)

        self.lock = threading.Lock()
        self.requests: typing.List[RecordedRequest] = []
        self.connections = 0

        self.mode = "ntlm"
        self.accept = True
        self.drop_auth = False
        self.close_after_reply = False
        self.delay = 0.0
        self.redirect = ""
        self.challenge_header = negotiate_header(CHALLENGE_TOKEN)
        self.basic_header = ""
        self.status = 200
        self.response_body = RESPONSE_BODY

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def authorizations(self) -> typing.List[typing.Optional[str]]:
        return [r.authorization for r in self.requests]


class FakeNTLMContext:
    """Stands in for the pyspnego NTLM context with fixed tokens."""

    def __init__(self, username, password, hostname=None, service=None, channel_bindings=None, protocol=None):
        self.username = username
        self.password = password
        self.hostname = hostname
        self.service = service
        self.channel_bindings = channel_bindings
        self.protocol = protocol

    def step(self, in_token=None):
        if in_token is None:
            return NEGOTIATE_TOKEN

        if in_token == CHALLENGE_TOKEN:
            return AUTHENTICATE_TOKEN

        raise spnego.exceptions.InvalidTokenError(context_msg=f"Unexpected challenge {in_token!r}")


class DialRecorder:
    def __init__(self):
        self.addresses = []

    def __call__(self, address, timeout):
        self.addresses.append(address)
        return socket.create_connection(address, timeout)


class TLSCertificates(typing.NamedTuple):
    ca_pem: bytes
    cert_der: bytes
    cert_path: str
    key_path: str


def _start(server: WinRMServer) -> threading.Thread:
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


@pytest.fixture(autouse=True)
def no_proxy_env(monkeypatch):
    for name in PROXY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(name.lower(), raising=False)


@pytest.fixture
def ntlm_contexts(monkeypatch):
    contexts = []

    def client(*args, **kwargs):
        context = FakeNTLMContext(*args, **kwargs)
        contexts.append(context)
        return context

    monkeypatch.setattr(spnego, "client", client)
    return contexts


@pytest.fixture
def dialer():
    return DialRecorder()


@pytest.fixture
def server():
    srv = WinRMServer()
    _start(srv)
    yield srv
    srv.shutdown()
    srv.server_close()


@pytest.fixture(scope="session")
def certificates(tmp_path_factory):
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "ntlm-winrm test CA")])
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(ca_ski, critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.IPAddress(ipaddress.ip_address("127.0.0.1")), x509.DNSName("localhost")]
            ),
            critical=False,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    tmp = tmp_path_factory.mktemp("certs")
    cert_path = tmp / "cert.pem"
    key_path = tmp / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )

    return TLSCertificates(
        ca_pem=ca_cert.public_bytes(serialization.Encoding.PEM),
        cert_der=cert.public_bytes(serialization.Encoding.DER),
        cert_path=str(cert_path),
        key_path=str(key_path),
    )


@pytest.fixture
def tls_server(certificates):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certificates.cert_path, certificates.key_path)

    srv = WinRMServer(ssl_context=context)
    _start(srv)
    yield srv
    srv.shutdown()
    srv.server_close()


@pytest.fixture
def endpoint(server):
    return Endpoint("127.0.0.1", port=server.port, timeout=5)


@pytest.fixture
def tls_endpoint(tls_server, certificates):
    return Endpoint("127.0.0.1", port=tls_server.port, https=True, ca_cert=certificates.ca_pem, timeout=5)
