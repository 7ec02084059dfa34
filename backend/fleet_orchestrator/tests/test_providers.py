import json
import os
import subprocess
from types import SimpleNamespace
from unittest import mock

from azure.core.exceptions import ResourceNotFoundError
from botocore.exceptions import ClientError
from django.test import SimpleTestCase, TestCase
from google.api_core import exceptions as google_exceptions

from fleet_orchestrator.models import BotInstance, DeploymentTarget
from fleet_orchestrator.provider_utils import ProviderError, ProviderErrorType
from fleet_orchestrator.providers.azure_vm import AzureVmProvider
from fleet_orchestrator.providers.base import ContainerDeploymentConfig, ContainerHealth, ContainerStatus
from fleet_orchestrator.providers.docker import DockerProvider
from fleet_orchestrator.providers.ecs_ec2 import EcsEc2Provider
from fleet_orchestrator.providers.gce import GceProvider, build_startup_script
from fleet_orchestrator.providers.local import LocalProvider
from fleet_orchestrator.providers.registry import ProviderRegistry
from fleet_orchestrator.targets import normalize_deployment_type, resolve_target
from fleet_orchestrator.vault.aws import AwsVaultStore
from fleet_orchestrator.vault.local import LocalVaultStore
from fleet_orchestrator.vault.router import vault_router


def _proc(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(["docker"], returncode, stdout, stderr)


class DockerProviderTests(SimpleTestCase):
    def setUp(self):
        self.provider = DockerProvider()
        self.provider.initialize({"workspace": "team", "containerName": "openclaw-bot", "gatewayPort": 18789})

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_validate_reports_missing_docker(self, mock_run):
        mock_run.return_value = _proc(1, stderr="Cannot connect to the Docker daemon")
        result = self.provider.validate()
        self.assertFalse(result.valid)
        self.assertIn("Cannot connect", result.errors[0])

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_validate_warns_without_compose(self, mock_run):
        mock_run.side_effect = [_proc(0, stdout="27.0.1"), _proc(1, stderr="unknown command")]
        result = self.provider.validate()
        self.assertTrue(result.valid)
        self.assertEqual(len(result.warnings), 1)

    def test_run_args_include_network_env_and_ports(self):
        config = ContainerDeploymentConfig(
            name="bot", image="openclaw:local", environment={"A": "1"}, ports=[18789], command=["node", "gateway"]
        )
        args = self.provider._run_args(config)
        self.assertEqual(args[:4], ["run", "-d", "--name", "openclaw-bot"])
        self.assertIn("clawster-team-net", args)
        self.assertIn("A=1", args)
        self.assertIn("18789:18789", args)
        self.assertIn("managed-by=clawster", args)
        self.assertEqual(args[-3:], ["openclaw:local", "node", "gateway"])

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_get_container_parses_inspect_output(self, mock_run):
        info = {
            "Id": "abc123",
            "Name": "/openclaw-bot",
            "Created": "2024-01-01T00:00:00.123456789Z",
            "RestartCount": 2,
            "State": {"Running": True, "Health": {"Status": "healthy"}, "StartedAt": "2024-01-01T00:00:05Z"},
            "Config": {"Labels": {"instance": "bot", "workspace": "team"}, "Image": "openclaw:local"},
            "NetworkSettings": {"Ports": {"18789/tcp": None}},
        }
        mock_run.return_value = _proc(0, stdout=json.dumps(info))
        snapshot = self.provider.get_container("abc123")
        self.assertEqual(snapshot.status, ContainerStatus.RUNNING)
        self.assertEqual(snapshot.health, ContainerHealth.HEALTHY)
        self.assertEqual(snapshot.name, "bot")
        self.assertEqual(snapshot.created_at.microsecond, 123456)
        self.assertEqual(snapshot.endpoint, "http://localhost:18789")
        self.assertEqual(snapshot.metadata["restartCount"], 2)

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_get_container_missing_returns_none(self, mock_run):
        mock_run.return_value = _proc(1, stderr="Error: No such object: abc")
        self.assertIsNone(self.provider.get_container("abc"))

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_stop_tolerates_missing_container(self, mock_run):
        mock_run.return_value = _proc(1, stderr="Error response from daemon: No such container: abc")
        self.provider.stop_container("abc")
        mock_run.assert_called_once()

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_start_surfaces_provider_error(self, mock_run):
        mock_run.return_value = _proc(1, stderr="permission denied while trying to connect")
        with self.assertRaises(ProviderError):
            self.provider.start_container("abc")

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_deploy_replaces_container_left_by_interrupted_deploy(self, mock_run):
        existing = {"Id": "old111", "Name": "/openclaw-bot", "State": {"Status": "exited"}, "Config": {"Labels": {}}}
        fresh = {"Id": "new222", "Name": "/openclaw-bot", "State": {"Running": True}, "Config": {"Labels": {}}}
        mock_run.side_effect = [
            _proc(0, stdout=json.dumps(existing)),
            _proc(0, stdout=json.dumps(existing)),
            _proc(0),
            _proc(0, stdout="new222\n"),
            _proc(0, stdout=json.dumps(fresh)),
        ]
        self.provider.network_name = ""
        config = ContainerDeploymentConfig(name="bot", image="openclaw:local")
        snapshot = self.provider.deploy_container(config, {})
        self.assertEqual(snapshot.id, "new222")
        commands = [c.args[0][1:3] for c in mock_run.call_args_list]
        self.assertEqual(commands[2], ["rm", "-f"])
        self.assertEqual(commands[3], ["run", "-d"])

    @mock.patch("fleet_orchestrator.providers.docker.subprocess.run")
    def test_name_conflict_is_classified_as_already_exists(self, mock_run):
        mock_run.return_value = _proc(
            125,
            stderr='docker: Error response from daemon: Conflict. The container name "/openclaw-bot" is already in use.',
        )
        with self.assertRaises(ProviderError) as ctx:
            self.provider._run(["run", "-d", "--name", "openclaw-bot", "openclaw:local"])
        self.assertEqual(ctx.exception.error_type, ProviderErrorType.ALREADY_EXISTS)

    def test_local_provider_ignores_remote_docker_host(self):
        provider = LocalProvider()
        provider.initialize({"dockerHost": "tcp://10.0.0.5:2376"})
        self.assertEqual(provider.docker_host, "")
        self.assertEqual(provider.region, "local")
        self.assertEqual(provider.provider_type, "local")


class EcsEc2ProviderTests(SimpleTestCase):
    def _provider(self, mock_boto_client):
        client = mock.MagicMock()
        mock_boto_client.return_value = client
        provider = EcsEc2Provider()
        provider.initialize({"workspace": "team", "region": "eu-west-1"})
        return provider, client

    def test_snapshot_states(self):
        provider = EcsEc2Provider()
        provider.initialize({"workspace": "team"})
        degraded = provider._snapshot({"serviceName": "bot", "desiredCount": 2, "runningCount": 1})
        self.assertEqual(degraded.status, ContainerStatus.DEGRADED)
        self.assertEqual(degraded.health, ContainerHealth.UNHEALTHY)
        stopped = provider._snapshot({"serviceName": "bot", "desiredCount": 0, "runningCount": 0})
        self.assertEqual(stopped.status, ContainerStatus.STOPPED)
        failed = provider._snapshot(
            {"serviceName": "bot", "desiredCount": 1, "runningCount": 1, "deployments": [{"rolloutState": "FAILED"}]}
        )
        self.assertEqual(failed.status, ContainerStatus.ERROR)

    @mock.patch("fleet_orchestrator.providers.ecs_ec2.boto3.client")
    def test_deploy_creates_service_when_missing(self, mock_boto_client):
        provider, client = self._provider(mock_boto_client)
        client.register_task_definition.return_value = {"taskDefinition": {"taskDefinitionArn": "arn:td/1"}}
        client.describe_services.side_effect = [
            {"services": []},
            {"services": [{"serviceName": "bot", "status": "ACTIVE", "desiredCount": 1, "runningCount": 1}]},
        ]
        snapshot = provider.deploy_container(ContainerDeploymentConfig(name="bot", image="openclaw:1", ports=[18789]), {})
        self.assertEqual(snapshot.id, "bot")
        self.assertEqual(snapshot.status, ContainerStatus.RUNNING)
        kwargs = client.create_service.call_args.kwargs
        self.assertEqual(kwargs["launchType"], "EC2")
        self.assertEqual(kwargs["taskDefinition"], "arn:td/1")
        client.update_service.assert_not_called()
        container = client.register_task_definition.call_args.kwargs["containerDefinitions"][0]
        self.assertEqual(container["portMappings"][0]["containerPort"], 18789)
        self.assertEqual(mock_boto_client.call_args.kwargs["region_name"], "eu-west-1")

    @mock.patch("fleet_orchestrator.providers.ecs_ec2.boto3.client")
    def test_deploy_updates_existing_service(self, mock_boto_client):
        provider, client = self._provider(mock_boto_client)
        client.register_task_definition.return_value = {"taskDefinition": {"taskDefinitionArn": "arn:td/2"}}
        client.describe_services.return_value = {
            "services": [{"serviceName": "bot", "status": "ACTIVE", "desiredCount": 1, "runningCount": 1}]
        }
        provider.deploy_container(ContainerDeploymentConfig(name="bot", image="openclaw:2"), {})
        client.create_service.assert_not_called()
        self.assertTrue(client.update_service.call_args.kwargs["forceNewDeployment"])

    @mock.patch("fleet_orchestrator.providers.ecs_ec2.boto3.client")
    def test_get_container_ignores_inactive_services(self, mock_boto_client):
        provider, client = self._provider(mock_boto_client)
        client.describe_services.return_value = {"services": [{"serviceName": "bot", "status": "INACTIVE"}]}
        self.assertIsNone(provider.get_container("bot"))

    @mock.patch("fleet_orchestrator.providers.ecs_ec2.boto3.client")
    def test_stop_tolerates_missing_service(self, mock_boto_client):
        provider, client = self._provider(mock_boto_client)
        client.update_service.side_effect = ClientError(
            {"Error": {"Code": "ServiceNotFoundException", "Message": "gone"}}, "UpdateService"
        )
        provider.stop_container("bot")
        with self.assertRaises(ProviderError) as ctx:
            provider.start_container("bot")
        self.assertEqual(ctx.exception.error_type, ProviderErrorType.NOT_FOUND)


class GceProviderTests(SimpleTestCase):
    def _instance(self, status="RUNNING"):
        access = SimpleNamespace(nat_i_p="34.1.2.3")
        iface = SimpleNamespace(network_i_p="10.0.0.2", access_configs=[access])
        return SimpleNamespace(
            name="clawster-bot",
            status=status,
            labels={"instance": "bot"},
            network_interfaces=[iface],
            creation_timestamp="2024-01-01T00:00:00.000-07:00",
        )

    @mock.patch.dict(os.environ, {"GOOGLE_CLOUD_PROJECT": ""})
    def test_validate_requires_project(self):
        provider = GceProvider()
        provider.initialize({})
        result = provider.validate()
        self.assertFalse(result.valid)
        self.assertIn("projectId", result.errors[0])

    @mock.patch("fleet_orchestrator.providers.gce.compute_v1.InstancesClient")
    def test_get_container_maps_instance(self, mock_client_cls):
        mock_client_cls.return_value.get.return_value = self._instance()
        provider = GceProvider()
        provider.initialize({"projectId": "proj", "zone": "europe-west1-b"})
        snapshot = provider.get_container("clawster-bot")
        self.assertEqual(provider.region, "europe-west1")
        self.assertEqual(snapshot.status, ContainerStatus.RUNNING)
        self.assertEqual(snapshot.public_ip, "34.1.2.3")
        self.assertEqual(snapshot.private_ip, "10.0.0.2")
        self.assertEqual(snapshot.endpoint, "http://34.1.2.3:18789")
        self.assertEqual(snapshot.name, "bot")

    @mock.patch("fleet_orchestrator.providers.gce.compute_v1.InstancesClient")
    def test_get_container_missing_returns_none(self, mock_client_cls):
        mock_client_cls.return_value.get.side_effect = google_exceptions.NotFound("instance missing")
        provider = GceProvider()
        provider.initialize({"projectId": "proj"})
        self.assertIsNone(provider.get_container("clawster-bot"))

    @mock.patch("fleet_orchestrator.providers.gce.compute_v1.InstancesClient")
    def test_deploy_recreates_vm_left_by_interrupted_deploy(self, mock_client_cls):
        client = mock_client_cls.return_value
        client.get.return_value = self._instance()
        provider = GceProvider()
        provider.initialize({"projectId": "proj", "workspace": "team"})
        config = ContainerDeploymentConfig(name="bot", image="openclaw:1", ports=[18789])
        snapshot = provider.deploy_container(config, {})
        client.delete.assert_called_once_with(project="proj", zone="us-central1-a", instance="clawster-bot")
        client.insert.assert_called_once()
        self.assertEqual(client.insert.call_args.kwargs["instance_resource"].name, "clawster-bot")
        self.assertEqual(snapshot.status, ContainerStatus.RUNNING)

    @mock.patch("fleet_orchestrator.provider_utils.time.sleep")
    @mock.patch("fleet_orchestrator.providers.gce.compute_v1.InstancesClient")
    def test_start_waits_until_vm_is_running(self, mock_client_cls, mock_sleep):
        client = mock_client_cls.return_value
        client.get.side_effect = [self._instance("STAGING"), self._instance("RUNNING")]
        provider = GceProvider()
        provider.initialize({"projectId": "proj"})
        provider.start_container("clawster-bot")
        client.start.assert_called_once()
        self.assertEqual(client.get.call_count, 2)
        mock_sleep.assert_called_once()

    def test_startup_script_reads_secrets_from_secret_manager(self):
        config = ContainerDeploymentConfig(name="bot", image="openclaw:1", environment={"MODE": "prod"}, ports=[18789])
        script = build_startup_script(config, "proj", {"API_KEY": "clawster-bot-API_KEY"})
        self.assertIn("gcloud secrets versions access latest --secret=clawster-bot-API_KEY --project=proj", script)
        self.assertIn("-e MODE=prod", script)
        self.assertIn("-p 18789:18789", script)


class AzureVmProviderTests(SimpleTestCase):
    def test_snapshot_uses_power_and_provisioning_state(self):
        provider = AzureVmProvider()
        provider.initialize({"subscriptionId": "sub", "workspace": "team"})
        vm = SimpleNamespace(name="clawster-bot", tags={"instance": "bot"}, location="westeurope", time_created=None, vm_id="1")
        stopped = provider._snapshot(
            vm,
            SimpleNamespace(
                statuses=[SimpleNamespace(code="ProvisioningState/succeeded"), SimpleNamespace(code="PowerState/deallocated")]
            ),
        )
        self.assertEqual(stopped.status, ContainerStatus.STOPPED)
        self.assertEqual(stopped.region, "westeurope")
        failed = provider._snapshot(vm, SimpleNamespace(statuses=[SimpleNamespace(code="ProvisioningState/failed/VMStartTimedOut")]))
        self.assertEqual(failed.status, ContainerStatus.ERROR)
        self.assertEqual(provider.resource_group, "clawster-team")

    @mock.patch.dict(os.environ, {"AZURE_SUBSCRIPTION_ID": ""})
    def test_validate_requires_subscription(self):
        provider = AzureVmProvider()
        provider.initialize({})
        result = provider.validate()
        self.assertFalse(result.valid)

    @mock.patch.dict(os.environ, {"CLAWSTER_AZURE_SSH_PUBLIC_KEY": ""})
    def test_deploy_requires_ssh_key(self):
        provider = AzureVmProvider()
        provider.initialize({"subscriptionId": "sub"})
        with self.assertRaises(ProviderError) as ctx:
            provider.deploy_container(ContainerDeploymentConfig(name="bot", image="openclaw:1"), {})
        self.assertEqual(ctx.exception.error_type, ProviderErrorType.AUTHENTICATION)

    @mock.patch("fleet_orchestrator.providers.azure_vm.DefaultAzureCredential")
    @mock.patch("fleet_orchestrator.providers.azure_vm.ComputeManagementClient")
    def test_stop_tolerates_missing_vm(self, mock_compute_cls, _mock_credential):
        mock_compute_cls.return_value.virtual_machines.begin_deallocate.side_effect = ResourceNotFoundError("gone")
        provider = AzureVmProvider()
        provider.initialize({"subscriptionId": "sub"})
        provider.stop_container("clawster-bot")
        mock_compute_cls.return_value.virtual_machines.begin_deallocate.assert_called_once()


class RegistryAndTargetTests(TestCase):
    def test_null_deployment_type_resolves_to_local(self):
        instance = BotInstance.objects.create(name="bot")
        self.assertEqual(normalize_deployment_type(None), "LOCAL")
        self.assertEqual(normalize_deployment_type(resolve_target(instance).deployment_type), "LOCAL")
        provider = ProviderRegistry().get_provider(instance)
        self.assertIsInstance(provider, LocalProvider)
        self.assertIsInstance(vault_router.store_for_instance(instance), LocalVaultStore)

    def test_deployment_target_takes_precedence(self):
        target = DeploymentTarget.objects.create(name="aws", type="ECS_EC2", config_json={"awsRegion": "eu-west-1"})
        instance = BotInstance.objects.create(name="bot", deployment_type="DOCKER", deployment_target=target)
        resolved = resolve_target(instance)
        self.assertEqual(resolved.deployment_type, "ECS_EC2")
        self.assertEqual(resolved.source, "target")
        provider = ProviderRegistry().get_provider(instance)
        self.assertIsInstance(provider, EcsEc2Provider)
        self.assertEqual(provider.region, "eu-west-1")
        store = vault_router.store_for_instance(instance)
        self.assertIsInstance(store, AwsVaultStore)
        self.assertEqual(store.region, "eu-west-1")

    def test_aliases_and_unknown_types(self):
        self.assertEqual(normalize_deployment_type("azure"), "AZURE_VM")
        self.assertEqual(normalize_deployment_type("ecs-ec2"), "ECS_EC2")
        self.assertEqual(normalize_deployment_type("kubernetes"), "DOCKER")

    def test_registered_factory_overrides_builtin(self):
        instance = BotInstance.objects.create(name="bot", deployment_type="GCE")
        fake = DockerProvider()
        registry = ProviderRegistry({"GCE": lambda: fake})
        self.assertIs(registry.get_provider(instance), fake)
