"""vpcctl: Linux VPC simulator built from bridges, namespaces, veths and iptables."""

__version__ = "1.0.0"
