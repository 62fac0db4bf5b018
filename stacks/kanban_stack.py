import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct


class KanbanStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # Dev-first default: delete stateful resources on teardown.
        # For production deployments, set DATA_RETENTION_MODE=retain.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        schema_version = "2026-10-01"

        sections_table = ddb.Table(
            self,
            "KanbanSections",
            partition_key=ddb.Attribute(name="sectionId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        tasks_table = ddb.Table(
            self,
            "KanbanTasks",
            partition_key=ddb.Attribute(name="taskId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        kanban_fn = _lambda.Function(
            self,
            "KanbanHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="kanban_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(20),
            environment={
                "KANBAN_SECTIONS_TABLE": sections_table.table_name,
                "KANBAN_TASKS_TABLE": tasks_table.table_name,
                "KANBAN_SCHEMA_VERSION": schema_version,
            },
        )
        sections_table.grant_read_write_data(kanban_fn)
        tasks_table.grant_read_write_data(kanban_fn)

        logs.LogGroup(
            self,
            "KanbanHandlerLogGroup",
            log_group_name=f"/aws/lambda/{kanban_fn.function_name}",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "KanbanApi",
            rest_api_name=f"{construct_id}-{stage_name}-api",
            deploy_options=apigw.StageOptions(stage_name=stage_name),
        )
        integration = apigw.LambdaIntegration(kanban_fn)

        api = rest_api.root.add_resource("api")
        sections = api.add_resource("sections")
        tasks = api.add_resource("tasks")
        task = tasks.add_resource("{taskId}")
        task_move = task.add_resource("move")
        consistency = api.add_resource("consistency")
        consistency_repair = consistency.add_resource("repair")

        sections.add_method("GET", integration)
        sections.add_method("POST", integration)
        tasks.add_method("POST", integration)
        task.add_method("PUT", integration)
        task.add_method("PATCH", integration)
        task.add_method("DELETE", integration)
        task_move.add_method("PATCH", integration)
        consistency.add_method("GET", integration)
        consistency_repair.add_method("POST", integration)

        CfnOutput(
            self,
            "KanbanInvokeUrl",
            value=f"{rest_api.url}api",
            description="Invoke URL base for kanban endpoints.",
        )
        CfnOutput(
            self,
            "KanbanSectionsTableName",
            value=sections_table.table_name,
        )
        CfnOutput(
            self,
            "KanbanTasksTableName",
            value=tasks_table.table_name,
        )
