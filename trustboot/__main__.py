#!/usr/bin/env python3
#
# This is the CLI entrypoint. It parses arguments and runs the various
# subcommands.

import argparse
import enum
import ipaddress
import os
import pathlib
import signal
import sys
import threading
import trustboot.bootstrap
import trustboot.compliance
import trustboot.configuration
import trustboot.errors
import trustboot.logging
import trustboot.machineconfig
import trustboot.tls.crypto
import trustboot.trust.issuer
import trustboot.trust.transport
import typing
import yaml

logger = trustboot.logging.get_logger(__name__)

INPUT_FILENAME = "input.yaml"


class Action(enum.Enum):
    "Enumerates the things this CLI tool can do."
    GENERATE = enum.auto()
    WRITE_COMPLIANCE = enum.auto()
    REQUEST_IDENTITY = enum.auto()


def _parse_arguments(argv: typing.Optional[typing.List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bootstrap the trust fabric of a cluster"
    )

    subparsers = parser.add_subparsers()

    generate_parser = subparsers.add_parser(
        "generate",
        help="Generate certificate authorities, secrets and node configuration",
    )
    generate_parser.add_argument("--output-dir", type=pathlib.Path, default=pathlib.Path("."))
    generate_parser.set_defaults(action=Action.GENERATE)

    write_compliance_parser = subparsers.add_parser(
        "write-compliance", help="Write the audit policy and encryption configuration"
    )
    write_compliance_parser.add_argument(
        "--input", type=pathlib.Path, default=pathlib.Path(INPUT_FILENAME)
    )
    write_compliance_parser.add_argument(
        "--audit-policy-path", default=trustboot.compliance.AUDIT_POLICY_PATH
    )
    write_compliance_parser.add_argument(
        "--encryption-config-path", default=trustboot.compliance.ENCRYPTION_CONFIG_PATH
    )
    write_compliance_parser.set_defaults(action=Action.WRITE_COMPLIANCE)

    request_identity_parser = subparsers.add_parser(
        "request-identity", help="Request a node identity from the trust service"
    )
    request_identity_parser.add_argument(
        "--ip", action="append", default=[], help="IP address of this node"
    )
    request_identity_parser.add_argument(
        "--output-dir", type=pathlib.Path, default=pathlib.Path(".")
    )
    request_identity_parser.set_defaults(action=Action.REQUEST_IDENTITY)

    return parser.parse_args(argv)


def _write_file(path: pathlib.Path, contents: typing.Union[str, bytes], *, mode: int = 0o644) -> None:
    logger.info(f"Writing {path}...")
    data = contents.encode() if isinstance(contents, str) else contents
    with open(path, "wb") as f:
        f.write(data)
    path.chmod(mode)


def generate(
    configuration: trustboot.configuration.BootstrapConfiguration,
    *,
    output_dir: pathlib.Path,
) -> trustboot.bootstrap.BootstrapInput:
    bootstrap_input = trustboot.bootstrap.new_input(
        configuration.cluster_name,
        configuration.master_ips,
        configuration.kubernetes_version,
        configuration=configuration,
    )
    output_dir.mkdir(parents=True, exist_ok=True)
    _write_file(
        output_dir.joinpath(INPUT_FILENAME),
        yaml.safe_dump(bootstrap_input.serialize(), sort_keys=False),
        mode=0o600,
    )
    for config_type, document in trustboot.machineconfig.generate_all(
        bootstrap_input
    ).items():
        _write_file(
            output_dir.joinpath(f"{config_type.value}.yaml"), document, mode=0o600
        )
    return bootstrap_input


def write_compliance(
    *,
    input_path: pathlib.Path,
    audit_policy_path: str,
    encryption_config_path: str,
) -> None:
    with open(input_path) as f:
        data = yaml.safe_load(f)
    try:
        secret = data["kubeadm_tokens"]["aescbc_encryption_secret"]
    except (KeyError, TypeError):
        raise trustboot.errors.ConfigurationError(
            f"{input_path} has no aescbc_encryption_secret"
        )
    trustboot.compliance.enforce_common_master_requirements(
        secret,
        audit_policy_path=audit_policy_path,
        encryption_config_path=encryption_config_path,
    )


def request_identity(
    configuration: trustboot.configuration.BootstrapConfiguration,
    *,
    ip_addresses: typing.List[str],
    output_dir: pathlib.Path,
    cancel: threading.Event,
) -> trustboot.trust.issuer.IssuedIdentity:
    trust = configuration.trust
    if not trust.token:
        raise trustboot.errors.ConfigurationError("trust.token must be defined")
    issuer = trustboot.trust.issuer.RemoteIdentityIssuer(
        trust.token,
        [
            trustboot.trust.transport.RemoteEndpoint.parse(e, default_port=trust.port)
            for e in trust.endpoints
        ],
        poll_interval=trust.poll_interval_seconds,
        deadline=trust.deadline_seconds,
        dial_timeout=trust.dial_timeout_seconds,
        scheme=trust.scheme,
        verify=trust.verify,
    )

    private_key = trustboot.tls.crypto.generate_private_key()
    request = trustboot.tls.crypto.generate_certificate_signing_request(
        private_key, ip_addresses=[ipaddress.ip_address(ip) for ip in ip_addresses],
    )
    identity = issuer.identity(request, cancel=cancel)

    output_dir.mkdir(parents=True, exist_ok=True)
    _write_file(output_dir.joinpath("ca.crt"), identity.ca)
    _write_file(output_dir.joinpath("identity.crt"), identity.crt)
    _write_file(
        output_dir.joinpath("identity.key"),
        trustboot.tls.crypto.serialize_private_key(private_key),
        mode=0o600,
    )
    return identity


def _load_configuration() -> trustboot.configuration.BootstrapConfiguration:
    configuration_path = os.getenv("BOOTSTRAP_CONFIG")
    if not configuration_path:
        raise trustboot.errors.ConfigurationError("BOOTSTRAP_CONFIG not defined")

    logger.info(f"Loading configuration from {configuration_path}...")
    with open(configuration_path) as f:
        return trustboot.configuration.load_bootstrap_configuration(f)


def main(argv: typing.Optional[typing.List[str]] = None) -> None:
    arguments = _parse_arguments(argv)
    action = getattr(arguments, "action", None)

    try:
        if action == Action.GENERATE:
            configuration = _load_configuration()
            logger.info(f"Generating bootstrap data for {configuration.cluster_name}...")
            generate(configuration, output_dir=arguments.output_dir)
        elif action == Action.WRITE_COMPLIANCE:
            logger.info("Writing compliance artifacts...")
            write_compliance(
                input_path=arguments.input,
                audit_policy_path=arguments.audit_policy_path,
                encryption_config_path=arguments.encryption_config_path,
            )
        elif action == Action.REQUEST_IDENTITY:
            configuration = _load_configuration()
            cancel = threading.Event()
            signal.signal(signal.SIGINT, lambda *_: cancel.set())
            signal.signal(signal.SIGTERM, lambda *_: cancel.set())
            logger.info("Requesting identity from the trust service...")
            identity = request_identity(
                configuration,
                ip_addresses=arguments.ip,
                output_dir=arguments.output_dir,
                cancel=cancel,
            )
            logger.info(f"Identity issued by {identity.endpoint}")
        else:
            logger.error(f"{action} is not a valid command")
            sys.exit(1)
    except trustboot.errors.EndpointUnreachableError as e:
        for failure in e.failures:
            logger.error(f"{failure}")
        logger.error(f"{e}")
        sys.exit(1)
    except trustboot.errors.TrustbootError as e:
        logger.error(f"{e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
