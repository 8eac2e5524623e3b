# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "vpcs_total": Gauge("vpcctl_vpcs_total", "Total count of VPCs in the state store"),
    "subnets_total": Gauge("vpcctl_subnets_total", "Total count of subnets across all VPCs"),
    "peerings_total": Gauge("vpcctl_peerings_total", "Total count of VPC peering links"),
    "operation_latency": Histogram(
        "vpcctl_operation_duration_ms",
        "Time taken by control-plane operations in milliseconds",
        ["operation"],
        buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
    ),
    "operations": Counter(
        "vpcctl_operations_total",
        "Count of control-plane operations by outcome",
        ["operation", "outcome"],
    ),
    "api_requests": Counter(
        "vpcctl_api_requests_total",
        "Count of REST API requests",
        ["method", "endpoint"],
    ),
    "teardown_results": Counter(
        "vpcctl_teardown_results_total",
        "Count of per-resource teardown results",
        ["status"],
    ),
}


def refresh_inventory(store):
    """Set the inventory gauges from the state store."""
    vpcs = store.list_vpcs()
    METRICS["vpcs_total"].set(len(vpcs))
    METRICS["subnets_total"].set(sum(len(vpc.subnets) for vpc in vpcs))
    METRICS["peerings_total"].set(sum(len(vpc.peerings) for vpc in vpcs) // 2)
