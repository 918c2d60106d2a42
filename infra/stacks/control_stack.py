"""Control stack: Lambda entry points, schedules and IAM."""

import os
import shutil
import subprocess

from aws_cdk import (
    Stack,
    Duration,
    CfnOutput,
    aws_ec2 as ec2,
    aws_events as events,
    aws_events_targets as targets,
    aws_iam as iam,
    aws_lambda as lambda_,
    aws_logs as logs,
)
from constructs import Construct

from infra.stacks.state_stack import StateStack


def create_lambda_package():
    """Create a Lambda deployment package with dependencies."""
    package_dir = os.path.join(os.getcwd(), ".lambda-package")

    if os.path.exists(package_dir):
        shutil.rmtree(package_dir)
    os.makedirs(package_dir)

    subprocess.run(
        ["pip", "install", "-r", "lambda-requirements.txt", "-t", package_dir, "--quiet"],
        check=True,
    )

    for source, target in (("src/handlers", "handlers"), ("src/stackbox", "stackbox")):
        if os.path.exists(source):
            shutil.copytree(source, os.path.join(package_dir, target), dirs_exist_ok=True)

    return package_dir


class ControlStack(Stack):
    """Stack for the provisioning control plane.

    Creates:
    - Lambda functions for provisioning, conversion, trial sweep and status
    - Hourly EventBridge rule driving the trial sweep
    - Event bus for submissions, conversions and status transitions
    - IAM roles for the control plane and tenant instances
    - Security group for tenant instances
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        state_stack: StateStack,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        base_domain = self.node.try_get_context("base_domain") or "stackbox.io"
        bucket_prefix = "stackbox-tenant"
        email_notifications = self.node.try_get_context("email_notifications") or "false"

        vpc = ec2.Vpc.from_lookup(self, "DefaultVpc", is_default=True)

        # Tenant instances serve HTTP(S) directly
        self.instance_security_group = ec2.SecurityGroup(
            self,
            "TenantInstanceSecurityGroup",
            vpc=vpc,
            description="StackBox tenant instances",
            allow_all_outbound=True,
        )
        for port in (80, 443):
            self.instance_security_group.add_ingress_rule(
                peer=ec2.Peer.any_ipv4(),
                connection=ec2.Port.tcp(port),
                description=f"Public traffic on {port}",
            )

        # Tenant instances: SSM agent plus backup/restore through S3
        self.instance_role = iam.Role(
            self,
            "TenantInstanceRole",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore"),
            ],
        )
        self.instance_role.add_to_policy(
            iam.PolicyStatement(
                actions=["s3:GetObject", "s3:PutObject", "s3:ListBucket"],
                resources=[
                    f"arn:aws:s3:::{bucket_prefix}-*",
                    f"arn:aws:s3:::{bucket_prefix}-*/*",
                ],
            )
        )
        instance_profile = iam.CfnInstanceProfile(
            self,
            "TenantInstanceProfile",
            roles=[self.instance_role.role_name],
        )

        self.event_bus = events.EventBus(self, "StackBoxBus", event_bus_name="stackbox-events")

        # Control plane execution role
        self.lambda_role = iam.Role(
            self,
            "ControlLambdaRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaBasicExecutionRole"
                ),
            ],
        )
        state_stack.tenants_table.grant_read_write_data(self.lambda_role)
        state_stack.pool_table.grant_read_write_data(self.lambda_role)
        self.event_bus.grant_put_events_to(self.lambda_role)

        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "ec2:RunInstances",
                    "ec2:DescribeInstances",
                    "ec2:TerminateInstances",
                    "ec2:CreateTags",
                ],
                resources=["*"],
            )
        )
        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=["iam:PassRole"],
                resources=[self.instance_role.role_arn],
            )
        )
        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=["ssm:SendCommand", "ssm:GetCommandInvocation"],
                resources=["*"],
            )
        )
        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "route53:ListHostedZonesByName",
                    "route53:CreateHostedZone",
                    "route53:ChangeResourceRecordSets",
                    "route53:ListResourceRecordSets",
                    "route53:GetChange",
                ],
                resources=["*"],
            )
        )
        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=["s3:*"],
                resources=[
                    f"arn:aws:s3:::{bucket_prefix}-*",
                    f"arn:aws:s3:::{bucket_prefix}-*/*",
                ],
            )
        )
        self.lambda_role.add_to_policy(
            iam.PolicyStatement(
                actions=["ses:CreateEmailIdentity", "ses:SendEmail"],
                resources=["*"],
            )
        )

        image = ec2.MachineImage.latest_amazon_linux2023().get_image(self)
        public_subnets = vpc.select_subnets(subnet_type=ec2.SubnetType.PUBLIC)

        environment = {
            "STACKBOX_BASE_DOMAIN": base_domain,
            "STACKBOX_BUCKET_PREFIX": bucket_prefix,
            "STACKBOX_AMI_ID": image.image_id,
            "STACKBOX_SECURITY_GROUP_IDS": self.instance_security_group.security_group_id,
            "STACKBOX_SUBNET_ID": public_subnets.subnet_ids[0],
            "STACKBOX_INSTANCE_PROFILE_ARN": instance_profile.attr_arn,
            "STACKBOX_PLATFORM_ROLE_ARN": self.lambda_role.role_arn,
            "STACKBOX_INSTANCE_ROLE_ARN": self.instance_role.role_arn,
            "STACKBOX_TENANTS_TABLE": state_stack.tenants_table.table_name,
            "STACKBOX_POOL_TABLE": state_stack.pool_table.table_name,
            "STACKBOX_EVENT_BUS_NAME": self.event_bus.event_bus_name,
            "STACKBOX_EMAIL_NOTIFICATIONS": str(email_notifications).lower(),
        }

        lambda_code = lambda_.Code.from_asset(create_lambda_package())

        def function(construct_name: str, name: str, handler: str, timeout: Duration):
            return lambda_.Function(
                self,
                construct_name,
                function_name=f"stackbox-{name}",
                runtime=lambda_.Runtime.PYTHON_3_11,
                handler=handler,
                code=lambda_code,
                timeout=timeout,
                memory_size=512,
                role=self.lambda_role,
                environment=environment,
                log_retention=logs.RetentionDays.ONE_MONTH,
            )

        # Pipelines wait on instances and container health
        self.provisioning_lambda = function(
            "ProvisioningLambda", "provisioning", "handlers.provisioning.handler", Duration.minutes(15)
        )
        self.conversion_lambda = function(
            "ConversionLambda", "conversion", "handlers.conversion.handler", Duration.minutes(15)
        )
        self.sweep_lambda = function(
            "TrialSweepLambda", "trial-sweep", "handlers.trial_sweep.handler", Duration.minutes(15)
        )
        self.status_lambda = function(
            "StatusLambda", "status", "handlers.status.handler", Duration.seconds(30)
        )

        # Scheduled tick for the trial sweep
        events.Rule(
            self,
            "TrialSweepSchedule",
            schedule=events.Schedule.rate(Duration.hours(1)),
            targets=[targets.LambdaFunction(self.sweep_lambda, retry_attempts=0)],
        )

        events.Rule(
            self,
            "TenantSubmittedRule",
            event_bus=self.event_bus,
            event_pattern=events.EventPattern(
                source=["stackbox.onboarding"],
                detail_type=["TenantConfigSubmitted"],
            ),
            targets=[targets.LambdaFunction(self.provisioning_lambda, retry_attempts=0)],
        )

        events.Rule(
            self,
            "ConversionConfirmedRule",
            event_bus=self.event_bus,
            event_pattern=events.EventPattern(
                source=["stackbox.billing"],
                detail_type=["ConversionConfirmed"],
            ),
            targets=[targets.LambdaFunction(self.conversion_lambda, retry_attempts=2)],
        )

        CfnOutput(self, "EventBusName", value=self.event_bus.event_bus_name)
        CfnOutput(self, "StatusFunctionName", value=self.status_lambda.function_name)
