"""Remote registry: Cloudflare zones, tunnels, DNS records and credentials."""

from .client import CNAME_SUFFIX, DnsRecord, RegistryClient, RemoteTunnel, tunnel_cname

__all__ = [
    "CNAME_SUFFIX",
    "DnsRecord",
    "RegistryClient",
    "RemoteTunnel",
    "tunnel_cname",
]
