"""
Integration tests for API routes.
Tests all endpoints in the servers blueprint and main app routes.
"""
import json
from unittest.mock import MagicMock

from docker.errors import APIError

from shared.state_machine import ServerStatus


class TestHealthEndpoint:
    """Tests for /api/v1/health endpoint."""

    def test_health_check(self, client, redis_client):
        """Health check should return 200."""
        response = client.get('/api/v1/health')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['status'] == 'ok'
        assert data['database'] == 'ok'
        assert data['jobs'] == {'waiting': 0, 'active': 0, 'delayed': 0}


class TestServerCRUD:
    """Tests for server CRUD operations."""

    def test_create_server(self, client, db_session, redis_client, docker_client):
        """POST /api/v1/servers should create the server and queue its start."""
        response = client.post('/api/v1/servers', json={
            'name': 'Survival',
            'version': '1.20.4',
            'max_players': 8
        })

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data['server']['status'] == 'TO_SETUP'
        assert data['server']['container_id'] == 'c0ffee' * 10
        assert data['server']['max_players'] == 8
        assert data['job_id']

        env = docker_client.containers.create.call_args.kwargs['environment']
        assert env['VERSION'] == '1.20.4'

    def test_create_server_missing_name(self, client, db_session):
        response = client.post('/api/v1/servers', json={'version': '1.20.4'})
        assert response.status_code == 400

    def test_create_server_runtime_failure(self, client, db_session, redis_client, docker_client):
        """A failed container create maps to 502."""
        docker_client.containers.create.side_effect = APIError('image pull failed')

        response = client.post('/api/v1/servers', json={'name': 'Broken'})

        assert response.status_code == 502
        assert 'image pull failed' in json.loads(response.data)['error']

    def test_get_server(self, client, sample_server):
        response = client.get(f'/api/v1/servers/{sample_server.server_id}')

        assert response.status_code == 200
        assert json.loads(response.data)['server_id'] == sample_server.server_id

    def test_get_server_not_found(self, client, db_session):
        response = client.get('/api/v1/servers/srv_nonexistent')
        assert response.status_code == 404

    def test_list_servers(self, client, make_server):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)
        make_server('srv_bbbbbbbbbbbb', ServerStatus.STOPPED, 25566)

        response = client.get('/api/v1/servers')
        assert json.loads(response.data)['count'] == 2

        response = client.get('/api/v1/servers?status=RUNNING')
        data = json.loads(response.data)
        assert [s['server_id'] for s in data['servers']] == ['srv_aaaaaaaaaaaa']

    def test_reconfigure_server(self, client, sample_server, docker_client):
        response = client.put(
            f'/api/v1/servers/{sample_server.server_id}',
            json={'motd': 'Welcome back'}
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['server']['motd'] == 'Welcome back'
        assert data['server']['container_id'] == 'c0ffee' * 10

    def test_reconfigure_unknown_property(self, client, sample_server, docker_client):
        response = client.put(
            f'/api/v1/servers/{sample_server.server_id}',
            json={'gamemode': 'creative'}
        )
        assert response.status_code == 400

    def test_delete_server(self, client, sample_server, docker_client):
        response = client.delete(f'/api/v1/servers/{sample_server.server_id}')

        assert response.status_code == 200
        assert json.loads(response.data)['server']['status'] == 'DELETED'

        response = client.get('/api/v1/servers')
        assert json.loads(response.data)['count'] == 0


class TestLifecycleEndpoints:
    """Tests for start/stop/restart and job status."""

    def test_start_server(self, client, sample_server, redis_client):
        response = client.put(f'/api/v1/servers/{sample_server.server_id}/start')

        assert response.status_code == 202
        job_id = json.loads(response.data)['job_id']

        response = client.get(f'/api/v1/jobs/{job_id}')
        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'pending'

    def test_start_running_server_conflict(self, client, make_server, redis_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)

        response = client.put('/api/v1/servers/srv_aaaaaaaaaaaa/start')
        assert response.status_code == 409

    def test_stop_server(self, client, make_server, docker_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)

        response = client.put('/api/v1/servers/srv_aaaaaaaaaaaa/stop')

        assert response.status_code == 200
        assert json.loads(response.data)['server']['status'] == 'STOPPED'
        docker_client.containers.get.return_value.stop.assert_called_once_with(timeout=30)

    def test_stop_new_server_conflict(self, client, make_server, docker_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.TO_SETUP, 25565)

        response = client.put('/api/v1/servers/srv_aaaaaaaaaaaa/stop')
        assert response.status_code == 409

    def test_restart_server(self, client, make_server, docker_client, redis_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)

        response = client.put('/api/v1/servers/srv_aaaaaaaaaaaa/restart')

        assert response.status_code == 202
        assert json.loads(response.data)['job_id']

    def test_unknown_job(self, client, redis_client):
        response = client.get('/api/v1/jobs/999999')
        assert response.status_code == 404

    def test_job_completes(self, app, client, sample_server, redis_client, docker_client, mocker):
        """A queued start processed by the worker reports completed."""
        mocker.patch.object(app.lifecycle.detector, 'wait_until_ready')
        response = client.put(f'/api/v1/servers/{sample_server.server_id}/start')
        job_id = json.loads(response.data)['job_id']

        app.job_queue.process_next(app.lifecycle)

        data = json.loads(client.get(f'/api/v1/jobs/{job_id}').data)
        assert data['status'] == 'completed'
        server = json.loads(client.get(f'/api/v1/servers/{sample_server.server_id}').data)
        assert server['status'] == 'RUNNING'


class TestRuntimeEndpoints:
    """Tests for container status, logs and console commands."""

    def test_runtime_status(self, client, sample_server, docker_client):
        container = docker_client.containers.get.return_value
        container.id = sample_server.container_id
        container.attrs = {'State': {'Running': False, 'Status': 'exited', 'ExitCode': 0}}

        response = client.get(f'/api/v1/servers/{sample_server.server_id}/status')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['running'] is False
        assert data['status'] == 'exited'

    def test_logs(self, client, sample_server, docker_client):
        docker_client.containers.get.return_value.logs.return_value = b'Starting\nDone\n'

        response = client.get(f'/api/v1/servers/{sample_server.server_id}/logs?lines=2')

        assert json.loads(response.data)['lines'] == ['Starting', 'Done']

    def test_add_operator(self, client, make_server, docker_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)
        docker_client.containers.get.return_value.exec_run.return_value = MagicMock(
            exit_code=0, output=b'Made Steve a server operator'
        )

        response = client.post(
            '/api/v1/servers/srv_aaaaaaaaaaaa/operators',
            json={'username': 'Steve'}
        )

        assert response.status_code == 201
        assert json.loads(response.data)['output'] == 'Made Steve a server operator'

    def test_add_operator_missing_username(self, client, make_server):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)

        response = client.post('/api/v1/servers/srv_aaaaaaaaaaaa/operators', json={})
        assert response.status_code == 400

    def test_add_operator_stopped_server(self, client, sample_server, docker_client):
        response = client.post(
            f'/api/v1/servers/{sample_server.server_id}/operators',
            json={'username': 'Steve'}
        )
        assert response.status_code == 409

    def test_remove_operator_and_save(self, client, make_server, docker_client):
        make_server('srv_aaaaaaaaaaaa', ServerStatus.RUNNING, 25565)
        docker_client.containers.get.return_value.exec_run.return_value = MagicMock(
            exit_code=0, output=b'ok'
        )

        response = client.delete('/api/v1/servers/srv_aaaaaaaaaaaa/operators/Steve')
        assert response.status_code == 200

        response = client.post('/api/v1/servers/srv_aaaaaaaaaaaa/save')
        assert response.status_code == 200
        assert json.loads(response.data)['message'] == 'World saved'
