#!/usr/bin/env python3
#
# This module contains static configuration for the project. This provides an
# easy place to track values that aren't user-configurable but need to be
# synchronized across the project. Most of them can be overridden through
# the bootstrap configuration file.

import datetime

# Network to be used for Kubernetes Pods when using IPv4-based master nodes
IPV4_POD_NET = "10.244.0.0/16"
# Network to be used for Kubernetes Services when using IPv4-based master nodes
IPV4_SERVICE_NET = "10.96.0.0/12"
# Network to be used for Kubernetes Pods when using IPv6-based master nodes
IPV6_POD_NET = "fc00:db8:10::/56"
# Network to be used for Kubernetes Services when using IPv6-based master nodes
IPV6_SERVICE_NET = "fc00:db8:20::/112"

IPV4_LOOPBACK = "127.0.0.1"
IPV6_LOOPBACK = "::1"

SERVICE_DOMAIN = "cluster.local"

# Root certificate authorities are valid for 10 years
CERTIFICATE_AUTHORITY_VALIDITY = datetime.timedelta(hours=87600)
# Leaf identities are valid for 1 year
IDENTITY_VALIDITY = datetime.timedelta(days=365)

ETCD_ORGANIZATION = "etcd"
KUBERNETES_ORGANIZATION = "kubernetes-CA-organization"
OS_ORGANIZATION = "os-CA-organization"

# Bootstrap tokens look like abcdef.0123456789abcdef
TOKEN_ID_LENGTH = 6
TOKEN_SECRET_LENGTH = 16

# Port of the trust service
TRUST_SERVICE_PORT = 50001
TRUST_SERVICE_SCHEME = "https"
POLL_INTERVAL_SECONDS = 5.0
ISSUANCE_DEADLINE_SECONDS = 5 * 60.0
DIAL_TIMEOUT_SECONDS = 10.0

AUDIT_POLICY_PATH = "/etc/kubernetes/audit-policy.yaml"
ENCRYPTION_CONFIG_PATH = "/etc/kubernetes/encryptionconfig.yaml"
