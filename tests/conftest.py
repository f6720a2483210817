"""
Shared fixtures for the Hadoop exporter tests.

Site configurations are written to tmp_path as real XML files; host
resolution is replaced by a lookup table so no test touches DNS.
"""

import logging
from typing import Dict, Optional
from unittest.mock import MagicMock

import pytest

from hadoop_exporter import (
    DaemonType,
    Endpoint,
    ExporterSettings,
    Protocol,
    ServiceTopology,
    SiteConfig,
)


# ============================================================
# HELPERS
# ============================================================

def site_xml(properties: Dict[str, str]) -> str:
    """Render a Hadoop site document."""
    body = "".join(
        f"  <property>\n    <name>{name}</name>\n    <value>{value}</value>\n  </property>\n"
        for name, value in properties.items()
    )
    return f'<?xml version="1.0"?>\n<configuration>\n{body}</configuration>\n'


class FakeResolver:
    """socket.gethostbyname stand-in backed by a dict."""

    def __init__(self, table: Optional[Dict[str, str]] = None):
        self.table = dict(table or {})

    def __call__(self, host: str) -> str:
        if host in self.table:
            return self.table[host]
        # IP literals resolve to themselves
        if all(part.isdigit() for part in host.split('.')) and host.count('.') == 3:
            return host
        raise OSError(f"unknown host {host}")


def json_response(payload, status_code: int = 200, headers: Optional[Dict[str, str]] = None):
    """MagicMock shaped like a requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload
    return response


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def reset_exporter_logger():
    """Drop handlers ProgramLogger attached during a test."""
    yield
    exporter_logger = logging.getLogger('hadoop_exporter')
    for handler in list(exporter_logger.handlers):
        handler.close()
        exporter_logger.removeHandler(handler)


@pytest.fixture
def logger():
    return logging.getLogger('hadoop_exporter.tests')


@pytest.fixture
def resolver():
    return FakeResolver({
        'nn1.example.com': '10.0.0.1',
        'nn2.example.com': '10.0.0.2',
        'nn3.example.com': '10.0.0.3',
        'rm1.example.com': '10.0.1.1',
        'rm2.example.com': '10.0.1.2',
        'dn1.example.com': '10.0.2.1',
    })


@pytest.fixture
def write_site(tmp_path):
    """Write a site file and return its path."""
    def _write(properties: Dict[str, str], name: str = 'hdfs-site.xml'):
        path = tmp_path / name
        path.write_text(site_xml(properties))
        return path
    return _write


@pytest.fixture
def ha_hdfs_site():
    """Two-NameNode nameservice ns1."""
    return SiteConfig({
        'dfs.internal.nameservices': 'ns1',
        'dfs.ha.namenodes.ns1': 'nn1,nn2',
        'dfs.namenode.rpc-address.ns1.nn1': '10.0.0.1:8020',
        'dfs.namenode.rpc-address.ns1.nn2': '10.0.0.2:8020',
        'dfs.namenode.http-address.ns1.nn1': '10.0.0.1:9870',
        'dfs.namenode.http-address.ns1.nn2': '10.0.0.2:9870',
    })


@pytest.fixture
def ha_yarn_site():
    """Two-ResourceManager cluster yarn-cluster."""
    return SiteConfig({
        'yarn.resourcemanager.cluster-id': 'yarn-cluster',
        'yarn.resourcemanager.ha.rm-ids': 'rm1,rm2',
        'yarn.resourcemanager.resource-tracker.address.rm1': 'rm1.example.com:8031',
        'yarn.resourcemanager.resource-tracker.address.rm2': 'rm2.example.com:8031',
        'yarn.resourcemanager.webapp.address.rm1': 'rm1.example.com:8088',
        'yarn.resourcemanager.webapp.address.rm2': 'rm2.example.com:8088',
    })


@pytest.fixture
def nn_peers():
    return (
        Endpoint('10.0.0.1', 9870, Protocol.HTTP, 'nn1'),
        Endpoint('10.0.0.2', 9870, Protocol.HTTP, 'nn2'),
    )


@pytest.fixture
def nn_topology(nn_peers):
    return ServiceTopology(
        daemon=DaemonType.NAMENODE,
        peers=nn_peers,
        active=nn_peers[0],
        self_endpoint=nn_peers[0],
        group_id='ns1',
        server_ip='10.0.0.1',
        hostname='nn1.example.com',
        rpc_port='8020',
    )


@pytest.fixture
def rm_peers():
    return (
        Endpoint('10.0.1.1', 8088, Protocol.HTTP, 'rm1'),
        Endpoint('10.0.1.2', 8088, Protocol.HTTP, 'rm2'),
    )


@pytest.fixture
def apps_topology(rm_peers):
    return ServiceTopology(
        daemon=DaemonType.APPLICATIONS,
        peers=rm_peers,
        active=rm_peers[0],
        self_endpoint=rm_peers[0],
        group_id='yarn-cluster',
        server_ip='10.0.1.1',
        hostname='rm1.example.com',
        rpc_port='8031',
    )


@pytest.fixture
def make_settings(tmp_path):
    def _make(daemon: DaemonType, **kwargs) -> ExporterSettings:
        kwargs.setdefault('site_config', tmp_path / 'site.xml')
        return ExporterSettings(daemon=daemon, **kwargs)
    return _make


@pytest.fixture
def namenode_beans():
    """JMX payload of an active NameNode on 10.0.0.1."""
    return {
        'beans': [
            {
                'name': 'Hadoop:service=NameNode,name=FSNamesystem',
                'MissingBlocks': 0,
                'CapacityTotal': 1000,
                'CapacityUsed': 400,
                'CapacityRemaining': 600,
                'BlocksTotal': 12,
                'FilesTotal': 34,
                'CorruptBlocks': 1,
            },
            {
                'name': 'Hadoop:service=NameNode,name=FSNamesystemState',
                'NumLiveDataNodes': 3,
                'NumDeadDataNodes': 0,
                'NumStaleDataNodes': 1,
            },
            {
                'name': 'Hadoop:service=NameNode,name=RpcActivityForPort8020',
                'RpcQueueTimeNumOps': 100,
                'RpcQueueTimeAvgTime': 0.5,
            },
            {
                'name': 'Hadoop:service=NameNode,name=RpcActivityForPort8022',
                'RpcQueueTimeNumOps': 7,
            },
            {
                'name': 'java.lang:type=Memory',
                'HeapMemoryUsage': {'committed': 2048, 'init': 1024, 'max': 4096, 'used': 512},
            },
            {
                'name': 'Hadoop:service=NameNode,name=NameNodeStatus',
                'State': 'active',
                'HostAndPort': '10.0.0.1:8020',
                'LastHATransitionTime': 1700000000000,
            },
        ]
    }
