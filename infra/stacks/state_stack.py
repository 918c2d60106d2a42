"""State stack: DynamoDB tables of the provisioning core."""

from aws_cdk import (
    Stack,
    RemovalPolicy,
    aws_dynamodb as dynamodb,
)
from constructs import Construct

TRIAL_STATUS_INDEX = "trial-status-index"


class StateStack(Stack):
    """Stack for durable tenant and shared-pool state."""

    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Configs, trial states, assignments, stack records, plans, results
        self.tenants_table = dynamodb.Table(
            self,
            "TenantsTable",
            table_name="stackbox-tenants",
            partition_key=dynamodb.Attribute(name="pk", type=dynamodb.AttributeType.STRING),
            sort_key=dynamodb.Attribute(name="sk", type=dynamodb.AttributeType.STRING),
            billing_mode=dynamodb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=RemovalPolicy.RETAIN,
        )

        # Sparse: only trial items carry trial_status
        self.tenants_table.add_global_secondary_index(
            index_name=TRIAL_STATUS_INDEX,
            partition_key=dynamodb.Attribute(
                name="trial_status", type=dynamodb.AttributeType.STRING
            ),
            sort_key=dynamodb.Attribute(name="pk", type=dynamodb.AttributeType.STRING),
            projection_type=dynamodb.ProjectionType.ALL,
        )

        # Shared pool rows and lease items
        self.pool_table = dynamodb.Table(
            self,
            "SharedPoolTable",
            table_name="stackbox-shared-pool",
            partition_key=dynamodb.Attribute(
                name="instance_id", type=dynamodb.AttributeType.STRING
            ),
            billing_mode=dynamodb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=RemovalPolicy.RETAIN,
        )
