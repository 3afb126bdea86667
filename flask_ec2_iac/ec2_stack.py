# flask_ec2_iac/ec2_stack.py
# ------------------------------------------------------------
# Single EC2 host serving a Flask app behind Nginx
# VPC -> public subnet -> security group -> key pair -> instance
# -> Elastic IP, plus a CloudWatch log group for the host logs
# ------------------------------------------------------------

from aws_cdk import (
    Stack,
    CfnOutput,
    RemovalPolicy,
    Tags,
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_logs as logs,
)
from constructs import Construct

from flask_ec2_iac.bootstrap import LOGIN_USER, render_bootstrap_commands
from flask_ec2_iac.config import DeploymentConfig
from flask_ec2_iac.logger import get_logger

logger = get_logger()

# Canonical publishes the current Ubuntu 22.04 AMI id here, in every region
UBUNTU_AMI_PARAMETER = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)

RETENTION_DAYS = {
    1: logs.RetentionDays.ONE_DAY,
    3: logs.RetentionDays.THREE_DAYS,
    5: logs.RetentionDays.FIVE_DAYS,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    60: logs.RetentionDays.TWO_MONTHS,
    90: logs.RetentionDays.THREE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
}


class FlaskEc2Stack(Stack):
    """
    FlaskEc2Stack provisions one Ubuntu instance that clones the Flask
    app on first boot and serves it on port 80 through Nginx.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: DeploymentConfig,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config

        # ------------------------------------------------------------
        # 1. VPC with a single public subnet
        # ------------------------------------------------------------
        # Creates the subnet, internet gateway and default route
        self.vpc = ec2.Vpc(
            self,
            "Vpc",
            ip_addresses=ec2.IpAddresses.cidr(config.vpc_cidr),
            max_azs=1,
            nat_gateways=0,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=config.subnet_cidr_mask,
                )
            ],
            enable_dns_hostnames=True,
            enable_dns_support=True,
        )

        # ------------------------------------------------------------
        # 2. Security Group
        # ------------------------------------------------------------
        self.security_group = ec2.SecurityGroup(
            self,
            "WebSecurityGroup",
            vpc=self.vpc,
            description=f"{config.project_name}: HTTP from anywhere, SSH from {config.ssh_allowed_cidr}",
            allow_all_outbound=True,
        )

        self.security_group.add_ingress_rule(
            peer=ec2.Peer.ipv4(config.ssh_allowed_cidr),
            connection=ec2.Port.tcp(22),
            description="SSH access",
        )

        # Only Nginx is reachable, the Flask port stays on loopback
        self.security_group.add_ingress_rule(
            peer=ec2.Peer.any_ipv4(),
            connection=ec2.Port.tcp(80),
            description="HTTP traffic to Nginx",
        )

        # ------------------------------------------------------------
        # 3. Key pair
        # ------------------------------------------------------------
        if config.generates_key_pair:
            logger.info("No public key given, AWS will generate key pair %s", config.resolved_key_name)
            self.key_pair = ec2.KeyPair(
                self,
                "KeyPair",
                key_pair_name=config.resolved_key_name,
            )
        else:
            logger.info("Importing public key as key pair %s", config.resolved_key_name)
            self.key_pair = ec2.KeyPair(
                self,
                "KeyPair",
                key_pair_name=config.resolved_key_name,
                public_key_material=config.public_key,
            )

        # ------------------------------------------------------------
        # 4. CloudWatch log group
        # ------------------------------------------------------------
        self.log_group = logs.LogGroup(
            self,
            "AppLogGroup",
            log_group_name=config.log_group_name,
            retention=RETENTION_DAYS[config.log_retention_days],
            removal_policy=RemovalPolicy.DESTROY,
        )

        # ------------------------------------------------------------
        # 5. Instance role (CloudWatch agent)
        # ------------------------------------------------------------
        self.instance_role = iam.Role(
            self,
            "InstanceRole",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            description=f"{config.project_name} host: ships logs to CloudWatch",
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("CloudWatchAgentServerPolicy"),
            ],
        )

        # ------------------------------------------------------------
        # 6. EC2 Instance
        # ------------------------------------------------------------
        user_data = ec2.UserData.for_linux()
        user_data.add_commands(*render_bootstrap_commands(config))

        self.instance = ec2.Instance(
            self,
            "AppInstance",
            instance_type=ec2.InstanceType(config.instance_type),
            machine_image=ec2.MachineImage.from_ssm_parameter(
                UBUNTU_AMI_PARAMETER,
                os=ec2.OperatingSystemType.LINUX,
            ),
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
            security_group=self.security_group,
            key_pair=self.key_pair,
            role=self.instance_role,
            user_data=user_data,
            user_data_causes_replacement=True,
            require_imdsv2=True,
            block_devices=[
                ec2.BlockDevice(
                    device_name="/dev/sda1",
                    volume=ec2.BlockDeviceVolume.ebs(
                        volume_size=config.root_volume_size,
                        volume_type=ec2.EbsDeviceVolumeType.GP3,
                        encrypted=True,
                        delete_on_termination=True,
                    ),
                )
            ],
        )
        # The agent starts during boot and expects the group to exist
        self.instance.node.add_dependency(self.log_group)

        # ------------------------------------------------------------
        # 7. Elastic IP
        # ------------------------------------------------------------
        # Survives instance replacement, the address stays the same
        self.elastic_ip = ec2.CfnEIP(self, "ElasticIp", domain="vpc")

        ec2.CfnEIPAssociation(
            self,
            "ElasticIpAssociation",
            allocation_id=self.elastic_ip.attr_allocation_id,
            instance_id=self.instance.instance_id,
        )

        # ------------------------------------------------------------
        # 8. Outputs
        # ------------------------------------------------------------
        public_ip = self.elastic_ip.ref

        CfnOutput(
            self,
            "InstanceId",
            value=self.instance.instance_id,
            description="EC2 instance id",
        )

        CfnOutput(
            self,
            "PublicIp",
            value=public_ip,
            description="Elastic IP of the Flask host",
        )

        CfnOutput(
            self,
            "AppUrl",
            value=f"http://{public_ip}{config.health_check_path}",
            description="Flask app through Nginx",
        )

        CfnOutput(
            self,
            "SshCommand",
            value=f"ssh -i {config.resolved_key_name}.pem {LOGIN_USER}@{public_ip}",
            description="SSH command to connect",
        )

        CfnOutput(
            self,
            "LogGroupName",
            value=self.log_group.log_group_name,
            description="CloudWatch log group with app, Nginx and boot logs",
        )

        if config.generates_key_pair:
            CfnOutput(
                self,
                "PrivateKeyParameter",
                value=self.key_pair.private_key.parameter_name,
                description="SSM parameter holding the generated private key",
            )

        # ------------------------------------------------------------
        # 9. Tags
        # ------------------------------------------------------------
        Tags.of(self).add("Project", config.project_name)
        for key, value in config.tags.items():
            Tags.of(self).add(key, value)
