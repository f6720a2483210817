"""
Tests for settings loading, command line flags and the HTTP endpoints.
"""

import json
from pathlib import Path

import pytest
import yaml
from prometheus_client import CollectorRegistry

from conftest import json_response
from hadoop_exporter import (
    DaemonType,
    ExpositionServer,
    HadoopCollector,
    HadoopExporter,
    HealthCheck,
    MetricConfigurationError,
    ProgramConfig,
    ProgramLogger,
    ProgramSource,
    SiteConfig,
    overrides_from_args,
    parse_args,
)


def write_config(tmp_path, exporter):
    path = tmp_path / 'exporter.yml'
    path.write_text(yaml.safe_dump({'exporter': exporter}))
    return path


def source_for(tmp_path, config_path=None):
    return ProgramSource(script_path=tmp_path / 'hadoop_exporter.py', config_override=config_path)


def call_app(app, path):
    captured = {}

    def start_response(status, headers):
        captured['status'] = status
        captured['headers'] = dict(headers)

    body = b''.join(app({'PATH_INFO': path, 'REQUEST_METHOD': 'GET', 'QUERY_STRING': ''}, start_response))
    return captured['status'], captured['headers'], body


# ============================================================
# PROGRAM CONFIG
# ============================================================

class TestProgramConfig:
    """YAML settings with defaults and overrides."""

    def test_defaults_without_file(self, tmp_path):
        settings = ProgramConfig(source_for(tmp_path)).load()

        assert settings.daemon is DaemonType.NAMENODE
        assert settings.listen_port == 9070
        assert settings.metrics_path == '/metrics'
        assert settings.request_timeout == 5
        assert settings.health_port is None
        assert settings.site_config == Path('/etc/hadoop/conf/hdfs-site.xml')

    @pytest.mark.parametrize("daemon,port,site", [
        ('datanode', 9071, '/etc/hadoop/conf/hdfs-site.xml'),
        ('resourcemanager', 9075, '/etc/hadoop/conf/yarn-site.xml'),
        ('applications', 9077, '/etc/hadoop/conf/yarn-site.xml'),
    ])
    def test_per_daemon_defaults(self, tmp_path, daemon, port, site):
        settings = ProgramConfig(source_for(tmp_path), {'daemon': daemon}).load()

        assert settings.listen_port == port
        assert settings.site_config == Path(site)

    def test_file_values(self, tmp_path):
        path = write_config(tmp_path, {
            'daemon': 'resourcemanager',
            'listen_address': '127.0.0.1:19075',
            'site_config': '/opt/hadoop/etc/yarn-site.xml',
            'request_timeout_sec': 10,
            'health_port': 19076,
            'verify_tls': False,
            'logging': {'level': 'DEBUG'},
        })
        config = ProgramConfig(source_for(tmp_path, path))

        settings = config.load()

        assert settings.daemon is DaemonType.RESOURCEMANAGER
        assert (settings.listen_host, settings.listen_port) == ('127.0.0.1', 19075)
        assert settings.request_timeout == 10
        assert settings.health_port == 19076
        assert settings.verify_tls is False
        assert config.logging['level'] == 'DEBUG'
        assert config.logging['backup_count'] == ProgramConfig.DEFAULT_LOG_BACKUP_COUNT

    def test_overrides_win(self, tmp_path):
        path = write_config(tmp_path, {'daemon': 'namenode', 'request_timeout_sec': 10})

        settings = ProgramConfig(
            source_for(tmp_path, path),
            {'daemon': 'datanode', 'request_timeout_sec': 3, 'hostname': None}
        ).load()

        assert settings.daemon is DaemonType.DATANODE
        assert settings.request_timeout == 3

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(MetricConfigurationError, match="not found"):
            ProgramConfig(source_for(tmp_path, tmp_path / 'absent.yml')).load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yml'
        path.write_text('exporter: [unclosed')

        with pytest.raises(MetricConfigurationError):
            ProgramConfig(source_for(tmp_path, path)).load()

    @pytest.mark.parametrize("exporter", [
        {'daemon': 'journalnode'},
        {'request_timeout_sec': 0},
        {'request_timeout_sec': '5'},
        {'metrics_path': 'metrics'},
        {'listen_address': ':notaport'},
        {'health_port': 9070},
        {'health_port': 70000},
        {'failure_threshold': 0},
    ])
    def test_validation(self, tmp_path, exporter):
        path = write_config(tmp_path, exporter)

        with pytest.raises(MetricConfigurationError):
            ProgramConfig(source_for(tmp_path, path)).load()


class TestCommandLine:

    def test_flags(self):
        args = parse_args([
            '--daemon', 'applications',
            '--web.listen-address', ':9999',
            '--yarn-site.path', '/etc/yarn-site.xml',
            '--get.timeout-seconds', '7',
        ])

        assert overrides_from_args(args) == {
            'daemon': 'applications',
            'listen_address': ':9999',
            'site_config': '/etc/yarn-site.xml',
            'request_timeout_sec': 7,
        }

    def test_hdfs_site_alias(self):
        assert parse_args(['--hdfs-site.path', '/x.xml']).site_config == '/x.xml'

    def test_no_flags(self):
        assert overrides_from_args(parse_args([])) == {}


# ============================================================
# HTTP ENDPOINTS
# ============================================================

class TestExpositionServer:
    """Routing of the exposition WSGI app."""

    def app(self, make_settings):
        settings = make_settings(DaemonType.NAMENODE, metrics_path='/metrics')
        return ExpositionServer(settings, CollectorRegistry(), None).create_app()

    def test_metrics_path(self, make_settings):
        status, headers, _ = call_app(self.app(make_settings), '/metrics')

        assert status.startswith('200')
        assert headers['Content-Type'].startswith('text/plain')

    def test_landing_page(self, make_settings):
        status, _, body = call_app(self.app(make_settings), '/')

        assert status.startswith('200')
        assert b'href="/metrics"' in body

    def test_unknown_path(self, make_settings):
        status, _, _ = call_app(self.app(make_settings), '/nope')

        assert status.startswith('404')


class TestHealthCheck:

    def make(self, tmp_path, make_settings, nn_topology, responses):
        settings = make_settings(DaemonType.NAMENODE, health_port=9072, failure_threshold=2)
        collector = HadoopCollector(settings, nn_topology)
        collector.engine.session.get = lambda *args, **kwargs: responses.pop(0)
        config = ProgramConfig(source_for(tmp_path))
        return HealthCheck(config, collector, None), collector

    def test_healthy_after_success(self, tmp_path, make_settings, nn_topology, namenode_beans):
        health, collector = self.make(tmp_path, make_settings, nn_topology, [json_response(namenode_beans)])
        collector.run_cycle()

        status, _, body = call_app(health.create_app(), '/health')
        document = json.loads(body)

        assert status.startswith('200')
        assert document['service']['status'] == 'healthy'
        assert document['stats']['scrapes']['successful'] == 1
        assert document['topology']['active'] == 'http://10.0.0.1:9870'

    def test_unhealthy_after_threshold(self, tmp_path, make_settings, nn_topology):
        responses = [json_response({}, status_code=500) for _ in range(4)]
        health, collector = self.make(tmp_path, make_settings, nn_topology, responses)
        collector.run_cycle()
        collector.run_cycle()

        status, _, body = call_app(health.create_app(), '/health')

        assert status.startswith('503')
        assert json.loads(body)['stats']['scrapes']['consecutive_failures'] == 2

    def test_unknown_path(self, tmp_path, make_settings, nn_topology):
        health, _ = self.make(tmp_path, make_settings, nn_topology, [])

        status, _, _ = call_app(health.create_app(), '/metrics')

        assert status.startswith('404')


# ============================================================
# EXPORTER WIRING
# ============================================================

class TestHadoopExporter:

    def test_wires_collector_and_servers(self, tmp_path, ha_hdfs_site):
        config = ProgramConfig(source_for(tmp_path), {
            'hostname': '10.0.0.1',
            'health_port': 9072,
            'logging': {'file': str(tmp_path / 'exporter.log')},
        })
        config.load()
        logger = ProgramLogger(source_for(tmp_path), config).logger

        exporter = HadoopExporter(config, logger, site=ha_hdfs_site)

        assert exporter.topology.member_id == 'nn1'
        assert exporter.collector.topology is exporter.topology
        assert exporter.health_check is not None
        assert exporter.exposition.port == 9070

    def test_unusable_site_is_fatal(self, tmp_path):
        config = ProgramConfig(source_for(tmp_path), {'hostname': '10.0.0.1'})
        config.load()
        logger = ProgramLogger(source_for(tmp_path), config).logger

        with pytest.raises(MetricConfigurationError):
            HadoopExporter(config, logger, site=SiteConfig({}))
