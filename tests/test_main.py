import pytest
import stat
import threading
import textwrap
import trustboot.__main__ as cli
import trustboot.configuration
import trustboot.trust.transport as transport
import yaml
from conftest import FakeClient


@pytest.fixture
def configuration_path(tmp_path, monkeypatch):
    path = tmp_path / "bootstrap.yaml"
    path.write_text(
        textwrap.dedent(
            """
            cluster_name: cli-cluster
            master_ips: [10.0.0.1, 10.0.0.2]
            trust:
              endpoints: [10.0.0.1, 10.0.0.2]
              token: abcdef.0123456789abcdef
            """
        )
    )
    monkeypatch.setenv("BOOTSTRAP_CONFIG", str(path))
    return path


def test_generate(tmp_path, configuration_path):
    output_dir = tmp_path / "out"
    cli.main(["generate", "--output-dir", str(output_dir)])

    bundle = yaml.safe_load((output_dir / "input.yaml").read_text())
    assert bundle["cluster_name"] == "cli-cluster"
    assert stat.S_IMODE((output_dir / "input.yaml").stat().st_mode) == 0o600
    for name in ("init", "controlplane", "join"):
        document = yaml.safe_load((output_dir / f"{name}.yaml").read_text())
        assert document["machine"]["type"] == name


def test_write_compliance(tmp_path):
    input_path = tmp_path / "input.yaml"
    input_path.write_text(
        yaml.safe_dump({"kubeadm_tokens": {"aescbc_encryption_secret": "c2VjcmV0"}})
    )
    cli.main(
        [
            "write-compliance",
            "--input",
            str(input_path),
            "--audit-policy-path",
            str(tmp_path / "audit.yaml"),
            "--encryption-config-path",
            str(tmp_path / "encryption.yaml"),
        ]
    )
    assert "c2VjcmV0" in (tmp_path / "encryption.yaml").read_text()
    assert (tmp_path / "audit.yaml").exists()


def test_write_compliance_without_secret(tmp_path):
    input_path = tmp_path / "input.yaml"
    input_path.write_text("cluster_name: test\n")
    with pytest.raises(SystemExit) as e:
        cli.main(["write-compliance", "--input", str(input_path)])
    assert e.value.code == 1


def test_missing_configuration(monkeypatch):
    monkeypatch.delenv("BOOTSTRAP_CONFIG", raising=False)
    with pytest.raises(SystemExit) as e:
        cli.main(["generate"])
    assert e.value.code == 1


def test_no_command():
    with pytest.raises(SystemExit) as e:
        cli.main([])
    assert e.value.code == 1


def test_request_identity(tmp_path, configuration_path, monkeypatch):
    dialed = []

    def connect(endpoint, *, token, timeout, scheme, verify):
        dialed.append(endpoint)
        if endpoint.host == "10.0.0.1":
            raise ConnectionRefusedError("connection refused")
        return FakeClient([transport.CertificateResponse(ca=b"ca-pem", crt=b"crt-pem")])

    monkeypatch.setattr(transport, "connect", connect)
    with open(configuration_path) as f:
        configuration = trustboot.configuration.load_bootstrap_configuration(f)

    identity = cli.request_identity(
        configuration,
        ip_addresses=["10.0.0.5"],
        output_dir=tmp_path,
        cancel=threading.Event(),
    )
    assert identity.endpoint == transport.RemoteEndpoint("10.0.0.2", 50001)
    assert [e.host for e in dialed] == ["10.0.0.1", "10.0.0.2"]
    assert (tmp_path / "ca.crt").read_bytes() == b"ca-pem"
    assert (tmp_path / "identity.crt").read_bytes() == b"crt-pem"
    assert b"PRIVATE KEY" in (tmp_path / "identity.key").read_bytes()
    assert stat.S_IMODE((tmp_path / "identity.key").stat().st_mode) == 0o600
