import base64
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from ..provider_utils import (
    ProviderError,
    ProviderErrorType,
    generate_tags,
    sanitize_resource_name,
    to_aws_tags,
)
from ..vault.aws import AwsVaultStore
from .base import (
    BaseProvider,
    BootstrapOptions,
    CloudResources,
    ContainerDeploymentConfig,
    ContainerFilters,
    ContainerHealth,
    ContainerInstance,
    ContainerStatus,
    LogEvent,
    LogOptions,
    LogResult,
    ValidationResult,
    report,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"
DEFAULT_INSTANCE_TYPE = os.environ.get("CLAWSTER_ECS_INSTANCE_TYPE", "t3.medium")
DEFAULT_IMAGE = os.environ.get("CLAWSTER_BOT_IMAGE", "ghcr.io/openclaw/openclaw:latest")
DEFAULT_ALLOWED_CIDR = os.environ.get("CLAWSTER_ALLOWED_CIDR", "0.0.0.0/0")
ECS_AMI_PARAMETER = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"
TASK_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"
CONTAINER_INSTANCE_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role"
LOG_RETENTION_DAYS = 30


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


class EcsEc2Provider(BaseProvider):
    provider_type = "ecs-ec2"
    display_name = "AWS ECS"

    def __init__(self):
        super().__init__()
        self.region = DEFAULT_REGION
        self.cluster_name = ""
        self.log_group = ""
        self._clients: Dict[str, Any] = {}

    def initialize(self, config: Dict[str, Any]) -> None:
        super().initialize(config)
        self.region = str(self.config.get("region") or DEFAULT_REGION)
        self.cluster_name = f"clawster-{sanitize_resource_name(self.workspace)}"
        self.log_group = f"/clawster/{sanitize_resource_name(self.workspace)}"
        self._clients = {}

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = boto3.client(service, region_name=self.region)
        return self._clients[service]

    @property
    def ecs(self):
        return self._client("ecs")

    @property
    def ec2(self):
        return self._client("ec2")

    @property
    def iam(self):
        return self._client("iam")

    @property
    def logs(self):
        return self._client("logs")

    def validate(self) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        try:
            identity = self._call(lambda: self._client("sts").get_caller_identity())
            logger.debug("validated AWS account %s", identity.get("Account"))
        except ProviderError as exc:
            errors.append(exc.message)
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
        try:
            self._call(lambda: self.ecs.describe_clusters(clusters=[self.cluster_name]))
        except ProviderError as exc:
            errors.append(f"Cannot access ECS: {exc.message}")
        if not self.config.get("certificateArn"):
            warnings.append("No certificateArn configured; gateway traffic will not be TLS terminated.")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # bootstrap

    def _ensure_cluster(self, tags: Dict[str, str]) -> str:
        resp = self._call(lambda: self.ecs.describe_clusters(clusters=[self.cluster_name]))
        for cluster in resp.get("clusters", []):
            if cluster.get("status") == "ACTIVE":
                return cluster["clusterArn"]
        created = self._call(
            lambda: self.ecs.create_cluster(
                clusterName=self.cluster_name,
                tags=[{"key": k, "value": v} for k, v in tags.items()],
                settings=[{"name": "containerInsights", "value": "enabled"}],
            )
        )
        return created["cluster"]["clusterArn"]

    def _ensure_vpc(self, options: BootstrapOptions, tags: Dict[str, str]) -> Dict[str, Any]:
        if options.vpc_id:
            return {"vpcId": options.vpc_id, "subnetIds": list(options.subnet_ids)}
        filters = [
            {"Name": "tag:managed-by", "Values": ["clawster"]},
            {"Name": "tag:workspace", "Values": [self.workspace]},
        ]
        vpcs = self._call(lambda: self.ec2.describe_vpcs(Filters=filters)).get("Vpcs", [])
        if vpcs:
            vpc_id = vpcs[0]["VpcId"]
            subnets = self._call(
                lambda: self.ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
            ).get("Subnets", [])
            return {"vpcId": vpc_id, "subnetIds": [s["SubnetId"] for s in subnets]}
        if not options.create_vpc:
            raise ProviderError(
                "No VPC found for workspace and create_vpc is disabled",
                ProviderErrorType.NOT_FOUND,
                suggestions=["Pass vpc_id and subnet_ids", "Enable create_vpc"],
            )

        def tag_spec(kind: str) -> List[Dict[str, Any]]:
            return [{"ResourceType": kind, "Tags": to_aws_tags(tags)}]

        vpc_id = self._call(
            lambda: self.ec2.create_vpc(CidrBlock="10.42.0.0/16", TagSpecifications=tag_spec("vpc"))
        )["Vpc"]["VpcId"]
        self._call(lambda: self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True}))
        igw_id = self._call(
            lambda: self.ec2.create_internet_gateway(TagSpecifications=tag_spec("internet-gateway"))
        )["InternetGateway"]["InternetGatewayId"]
        self._call(lambda: self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id))
        route_table_id = self._call(
            lambda: self.ec2.create_route_table(VpcId=vpc_id, TagSpecifications=tag_spec("route-table"))
        )["RouteTable"]["RouteTableId"]
        self._call(
            lambda: self.ec2.create_route(
                RouteTableId=route_table_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id
            )
        )
        zones = self._call(lambda: self.ec2.describe_availability_zones()).get("AvailabilityZones", [])
        subnet_ids = []
        for index, zone in enumerate(zones[:2]):
            subnet_id = self._call(
                lambda: self.ec2.create_subnet(
                    VpcId=vpc_id,
                    CidrBlock=f"10.42.{index}.0/24",
                    AvailabilityZone=zone["ZoneName"],
                    TagSpecifications=tag_spec("subnet"),
                )
            )["Subnet"]["SubnetId"]
            self._call(
                lambda: self.ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
            )
            self._call(lambda: self.ec2.associate_route_table(RouteTableId=route_table_id, SubnetId=subnet_id))
            subnet_ids.append(subnet_id)
        return {"vpcId": vpc_id, "subnetIds": subnet_ids, "internetGatewayId": igw_id}

    def _ensure_security_group(self, vpc_id: str, tags: Dict[str, str]) -> str:
        group_name = f"{self.cluster_name}-sg"
        filters = [
            {"Name": "group-name", "Values": [group_name]},
            {"Name": "vpc-id", "Values": [vpc_id]},
        ]
        groups = self._call(lambda: self.ec2.describe_security_groups(Filters=filters)).get("SecurityGroups", [])
        if groups:
            return groups[0]["GroupId"]
        sg_id = self._call(
            lambda: self.ec2.create_security_group(
                GroupName=group_name,
                Description="Clawster bot gateways",
                VpcId=vpc_id,
                TagSpecifications=[{"ResourceType": "security-group", "Tags": to_aws_tags(tags)}],
            )
        )["GroupId"]
        rules = [
            {
                "IpProtocol": "tcp",
                "FromPort": 18789,
                "ToPort": 18799,
                "IpRanges": [{"CidrIp": DEFAULT_ALLOWED_CIDR}],
            }
        ]
        try:
            self.ec2.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=rules)
        except ClientError as exc:
            if _error_code(exc) != "InvalidPermission.Duplicate":
                raise
        return sg_id

    def _ensure_role(self, role_name: str, service: str, policy_arn: str, tags: Dict[str, str]) -> str:
        trust = {
            "Version": "2012-10-17",
            "Statement": [
                {"Effect": "Allow", "Principal": {"Service": service}, "Action": "sts:AssumeRole"}
            ],
        }
        try:
            role = self.iam.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=json.dumps(trust),
                Tags=to_aws_tags(tags),
            )["Role"]
        except ClientError as exc:
            if _error_code(exc) != "EntityAlreadyExists":
                raise
            role = self._call(lambda: self.iam.get_role(RoleName=role_name))["Role"]
        self._call(lambda: self.iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn))
        return role["Arn"]

    def _ensure_instance_profile(self, role_name: str) -> str:
        try:
            profile = self.iam.create_instance_profile(InstanceProfileName=role_name)["InstanceProfile"]
            self._call(lambda: self.iam.add_role_to_instance_profile(InstanceProfileName=role_name, RoleName=role_name))
        except ClientError as exc:
            if _error_code(exc) != "EntityAlreadyExists":
                raise
            profile = self._call(lambda: self.iam.get_instance_profile(InstanceProfileName=role_name))["InstanceProfile"]
        return profile["Arn"]

    def _ensure_log_group(self, tags: Dict[str, str]) -> str:
        try:
            self.logs.create_log_group(logGroupName=self.log_group, tags=tags)
        except ClientError as exc:
            if _error_code(exc) != "ResourceAlreadyExistsException":
                raise
        self._call(
            lambda: self.logs.put_retention_policy(logGroupName=self.log_group, retentionInDays=LOG_RETENTION_DAYS)
        )
        return self.log_group

    def _ensure_capacity(self, subnet_ids: List[str], sg_id: str, instance_profile_arn: str, tags: Dict[str, str]) -> List[str]:
        registered = self._call(lambda: self.ecs.list_container_instances(cluster=self.cluster_name))
        if registered.get("containerInstanceArns"):
            return []
        existing = self._call(
            lambda: self.ec2.describe_instances(
                Filters=[
                    {"Name": "tag:clawster:cluster", "Values": [self.cluster_name]},
                    {"Name": "instance-state-name", "Values": ["pending", "running"]},
                ]
            )
        )
        running = [i["InstanceId"] for r in existing.get("Reservations", []) for i in r.get("Instances", [])]
        if running:
            return running
        ami_id = self._call(lambda: self._client("ssm").get_parameter(Name=ECS_AMI_PARAMETER))["Parameter"]["Value"]
        user_data = f"#!/bin/bash\necho ECS_CLUSTER={self.cluster_name} >> /etc/ecs/ecs.config\n"
        instance_tags = dict(tags)
        instance_tags["clawster:cluster"] = self.cluster_name
        instance_tags["Name"] = f"{self.cluster_name}-host"
        params: Dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": str(self.config.get("instanceType") or DEFAULT_INSTANCE_TYPE),
            "MinCount": 1,
            "MaxCount": 1,
            "IamInstanceProfile": {"Arn": instance_profile_arn},
            "UserData": base64.b64encode(user_data.encode("utf-8")).decode("utf-8"),
            "TagSpecifications": [{"ResourceType": "instance", "Tags": to_aws_tags(instance_tags)}],
        }
        if subnet_ids:
            params["NetworkInterfaces"] = [
                {
                    "DeviceIndex": 0,
                    "SubnetId": subnet_ids[0],
                    "Groups": [sg_id],
                    "AssociatePublicIpAddress": True,
                }
            ]
        resp = self._call(lambda: self.ec2.run_instances(**params))
        return [i["InstanceId"] for i in resp.get("Instances", [])]

    def bootstrap(self, options: BootstrapOptions, on_progress=None) -> CloudResources:
        self.workspace = options.workspace or self.workspace
        self.initialize({**self.config, "workspace": self.workspace, "region": options.region or self.region})
        tags = generate_tags(self.workspace, options.tags)

        report(on_progress, "cluster", f"Ensuring ECS cluster {self.cluster_name}")
        cluster_arn = self._ensure_cluster(tags)

        report(on_progress, "network", "Ensuring VPC, subnets and security group")
        network = self._ensure_vpc(options, tags)
        network["securityGroupId"] = self._ensure_security_group(network["vpcId"], tags)

        report(on_progress, "iam", "Ensuring IAM roles")
        base_name = sanitize_resource_name(self.workspace)
        execution_role_arn = self._ensure_role(
            f"clawster-{base_name}-ecs-execution", "ecs-tasks.amazonaws.com", TASK_EXECUTION_POLICY, tags
        )
        instance_role = f"clawster-{base_name}-ecs-instance"
        self._ensure_role(instance_role, "ec2.amazonaws.com", CONTAINER_INSTANCE_POLICY, tags)
        instance_profile_arn = self._ensure_instance_profile(instance_role)

        log_group = ""
        if options.enable_logging:
            report(on_progress, "logging", f"Ensuring log group {self.log_group}")
            log_group = self._ensure_log_group(tags)

        report(on_progress, "capacity", "Ensuring container instances")
        launched = self._ensure_capacity(
            network.get("subnetIds") or [], network["securityGroupId"], instance_profile_arn, tags
        )
        return CloudResources(
            provider=self.provider_type,
            region=self.region,
            network=network,
            iam={"executionRoleArn": execution_role_arn, "instanceProfileArn": instance_profile_arn},
            logging={"logGroupName": log_group, "logDriver": "awslogs"},
            metadata={"clusterArn": cluster_arn, "clusterName": self.cluster_name, "launchedInstances": launched},
        )

    # containers

    def _execution_role_arn(self) -> Optional[str]:
        role_name = f"clawster-{sanitize_resource_name(self.workspace)}-ecs-execution"
        try:
            return self.iam.get_role(RoleName=role_name)["Role"]["Arn"]
        except ClientError:
            return None

    def _register_task_definition(self, config: ContainerDeploymentConfig) -> str:
        family = sanitize_resource_name(f"clawster-{self.workspace}-{config.name}")
        secrets = []
        for key, value in sorted((config.secrets or {}).items()):
            arn = self.store_secret(config.name, key, value)
            secrets.append({"name": key, "valueFrom": arn})
        container: Dict[str, Any] = {
            "name": "openclaw",
            "image": config.image or str(self.config.get("image") or DEFAULT_IMAGE),
            "cpu": int(float(config.cpu) * 1024),
            "memory": int(config.memory),
            "essential": True,
            "environment": [{"name": k, "value": str(v)} for k, v in sorted((config.environment or {}).items())],
            "secrets": secrets,
            "portMappings": [{"containerPort": int(p), "hostPort": int(p), "protocol": "tcp"} for p in config.ports or []],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": self.log_group,
                    "awslogs-region": self.region,
                    "awslogs-stream-prefix": sanitize_resource_name(config.name),
                },
            },
        }
        if config.command:
            container["command"] = list(config.command)
        params: Dict[str, Any] = {
            "family": family,
            "networkMode": "bridge",
            "requiresCompatibilities": ["EC2"],
            "containerDefinitions": [container],
            "tags": [{"key": k, "value": v} for k, v in self.resource_labels(config).items()],
        }
        execution_role = self._execution_role_arn()
        if execution_role:
            params["executionRoleArn"] = execution_role
        resp = self._call(lambda: self.ecs.register_task_definition(**params))
        return resp["taskDefinition"]["taskDefinitionArn"]

    def _describe_service(self, service_name: str) -> Optional[Dict[str, Any]]:
        resp = self._call(
            lambda: self.ecs.describe_services(cluster=self.cluster_name, services=[service_name], include=["TAGS"])
        )
        for service in resp.get("services", []):
            if service.get("status") != "INACTIVE":
                return service
        return None

    def deploy_container(self, config: ContainerDeploymentConfig, manifest: Dict[str, Any]) -> ContainerInstance:
        service_name = sanitize_resource_name(config.name)
        task_definition = self._register_task_definition(config)
        existing = self._describe_service(service_name)
        if existing:
            self._call(
                lambda: self.ecs.update_service(
                    cluster=self.cluster_name,
                    service=service_name,
                    taskDefinition=task_definition,
                    desiredCount=config.replicas,
                    forceNewDeployment=True,
                )
            )
        else:
            self._call(
                lambda: self.ecs.create_service(
                    cluster=self.cluster_name,
                    serviceName=service_name,
                    taskDefinition=task_definition,
                    desiredCount=config.replicas,
                    launchType="EC2",
                    enableECSManagedTags=True,
                    propagateTags="SERVICE",
                    tags=[{"key": k, "value": v} for k, v in self.resource_labels(config).items()],
                )
            )
        snapshot = self.get_container(service_name)
        if snapshot:
            return snapshot
        now = datetime.now(timezone.utc)
        return ContainerInstance(
            id=service_name,
            name=config.name,
            status=ContainerStatus.CREATING,
            provider=self.provider_type,
            region=self.region,
            created_at=now,
            updated_at=now,
            metadata={"cluster": self.cluster_name, "taskDefinition": task_definition},
        )

    def update_container(self, container_id: str, config: ContainerDeploymentConfig) -> ContainerInstance:
        if not self._describe_service(container_id):
            raise ProviderError(f"ECS service {container_id} not found", ProviderErrorType.NOT_FOUND)
        task_definition = self._register_task_definition(config)
        self._call(
            lambda: self.ecs.update_service(
                cluster=self.cluster_name,
                service=container_id,
                taskDefinition=task_definition,
                desiredCount=config.replicas,
                forceNewDeployment=True,
            )
        )
        return self.get_container(container_id) or ContainerInstance(
            id=container_id, name=config.name, status=ContainerStatus.PENDING, provider=self.provider_type, region=self.region
        )

    def _scale(self, container_id: str, desired: int) -> bool:
        return self._call_ignoring_missing(
            lambda: self.ecs.update_service(cluster=self.cluster_name, service=container_id, desiredCount=desired)
        )

    def start_container(self, container_id: str) -> None:
        if not self._scale(container_id, int(self.config.get("replicas") or 1)):
            raise ProviderError(f"ECS service {container_id} not found", ProviderErrorType.NOT_FOUND)

    def stop_container(self, container_id: str) -> None:
        if not self._scale(container_id, 0):
            logger.warning("ECS service %s already gone", container_id)

    def delete_container(self, container_id: str) -> None:
        service = self._describe_service(container_id)
        if not service:
            logger.info("ECS service %s already deleted", container_id)
            return
        self._scale(container_id, 0)
        self._call_ignoring_missing(
            lambda: self.ecs.delete_service(cluster=self.cluster_name, service=container_id, force=True)
        )
        task_definition = service.get("taskDefinition")
        if task_definition:
            self._call_ignoring_missing(lambda: self.ecs.deregister_task_definition(taskDefinition=task_definition))

    def _snapshot(self, service: Dict[str, Any]) -> ContainerInstance:
        desired = int(service.get("desiredCount") or 0)
        running = int(service.get("runningCount") or 0)
        pending = int(service.get("pendingCount") or 0)
        rollout_failed = any(d.get("rolloutState") == "FAILED" for d in service.get("deployments", []))
        if service.get("status") == "DRAINING":
            status = ContainerStatus.DELETING
        elif rollout_failed:
            status = ContainerStatus.ERROR
        elif desired == 0:
            status = ContainerStatus.STOPPED
        elif running >= desired:
            status = ContainerStatus.RUNNING
        elif running > 0:
            status = ContainerStatus.DEGRADED
        elif pending > 0:
            status = ContainerStatus.PENDING
        else:
            status = ContainerStatus.CREATING
        health = ContainerHealth.UNKNOWN
        if status == ContainerStatus.RUNNING:
            health = ContainerHealth.HEALTHY
        elif status in (ContainerStatus.DEGRADED, ContainerStatus.ERROR):
            health = ContainerHealth.UNHEALTHY
        tags = {t.get("key"): t.get("value") for t in service.get("tags", [])}
        return ContainerInstance(
            id=service.get("serviceName") or "",
            name=tags.get("instance") or service.get("serviceName") or "",
            status=status,
            health=health,
            provider=self.provider_type,
            region=self.region,
            created_at=service.get("createdAt"),
            updated_at=datetime.now(timezone.utc),
            metadata={
                "cluster": self.cluster_name,
                "serviceArn": service.get("serviceArn"),
                "taskDefinition": service.get("taskDefinition"),
                "desiredCount": desired,
                "runningCount": running,
                "workspace": tags.get("workspace"),
                "labels": tags,
            },
        )

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        service = self._describe_service(container_id)
        return self._snapshot(service) if service else None

    def list_containers(self, filters: Optional[ContainerFilters] = None) -> List[ContainerInstance]:
        filters = filters or ContainerFilters()
        arns: List[str] = []
        paginator = self.ecs.get_paginator("list_services")
        for page in self._call(lambda: list(paginator.paginate(cluster=self.cluster_name))):
            arns.extend(page.get("serviceArns", []))
        results: List[ContainerInstance] = []
        for start in range(0, len(arns), 10):
            chunk = arns[start:start + 10]
            resp = self._call(
                lambda: self.ecs.describe_services(cluster=self.cluster_name, services=chunk, include=["TAGS"])
            )
            for service in resp.get("services", []):
                snapshot = self._snapshot(service)
                labels = snapshot.metadata.get("labels") or {}
                if labels.get("managed-by") != "clawster":
                    continue
                if filters.workspace and labels.get("workspace") != filters.workspace:
                    continue
                if filters.status and snapshot.status != filters.status:
                    continue
                if any(labels.get(k) != v for k, v in (filters.labels or {}).items()):
                    continue
                results.append(snapshot)
        return results

    def get_logs(self, container_id: str, options: Optional[LogOptions] = None) -> LogResult:
        options = options or LogOptions()
        params: Dict[str, Any] = {
            "logGroupName": self.log_group,
            "logStreamNamePrefix": sanitize_resource_name(container_id),
            "limit": options.limit,
        }
        if options.start:
            params["startTime"] = int(options.start.timestamp() * 1000)
        if options.end:
            params["endTime"] = int(options.end.timestamp() * 1000)
        if options.next_token:
            params["nextToken"] = options.next_token
        try:
            resp = self._call(lambda: self.logs.filter_log_events(**params))
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                return LogResult()
            raise
        events = [
            LogEvent(
                timestamp=datetime.fromtimestamp(int(event.get("timestamp", 0)) / 1000, tz=timezone.utc),
                message=str(event.get("message") or "").rstrip("\n"),
            )
            for event in resp.get("events", [])
        ]
        events.sort(key=lambda event: event.timestamp)
        return LogResult(events=events, next_token=resp.get("nextToken"))

    def _vault(self) -> AwsVaultStore:
        return AwsVaultStore(region=self.region)

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        return self._call(lambda: self._vault().store_secret(instance_id, key, value))

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        return self._call(lambda: self._vault().get_secret(instance_id, key))

    def delete_secret(self, instance_id: str, key: str) -> None:
        self._call(lambda: self._vault().delete_secret(instance_id, key))

    def get_console_url(self, resource_type: str = "", resource_id: str = "") -> str:
        base = f"https://{self.region}.console.aws.amazon.com/ecs/v2/clusters/{self.cluster_name}"
        if resource_type == "service" and resource_id:
            return f"{base}/services/{resource_id}/health?region={self.region}"
        return f"{base}/services?region={self.region}"
