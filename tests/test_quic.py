import asyncio
import datetime
import socket

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from iperfer import ProtocolConfig, Responder, Role, run_quic_client, run_quic_server

CONFIG = ProtocolConfig(chunk_size=4096)


def free_udp_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def write_self_signed_cert(directory):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]),
                       critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    return str(cert_path), str(key_path)


def test_quic_session_both_sides_agree_on_bytes(run, tmp_path):
    cert, key = write_self_signed_cert(tmp_path)
    port = free_udp_port()

    async def scenario():
        responder = Responder(CONFIG, protocol="quic", once=True)
        server_task = asyncio.ensure_future(
            run_quic_server("127.0.0.1", port, responder, cert=cert, key=key))
        await asyncio.sleep(0.2)
        client_report = await run_quic_client("127.0.0.1", port, 0.3, CONFIG)
        await asyncio.wait_for(server_task, 10)
        return client_report, responder

    client_report, responder = run(scenario(), timeout=30)
    assert responder.failures == 0
    assert responder.exit_status == 0
    server_report = responder.reports[0]

    assert client_report.role is Role.PROBER
    assert server_report.role is Role.RESPONDER
    assert client_report.bytes_transferred > 0
    assert server_report.bytes_transferred == client_report.bytes_transferred
    assert len(client_report.rtt_samples) == 8
    assert len(server_report.rtt_samples) == 7
