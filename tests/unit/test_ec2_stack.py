import json

import aws_cdk as core
import aws_cdk.assertions as assertions

from flask_ec2_iac.config import DeploymentConfig
from flask_ec2_iac.ec2_stack import FlaskEc2Stack

REPO_URL = "https://github.com/example/flask-demo.git"
PUBLIC_KEY = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQC7 test@example"


def build_template(**overrides) -> assertions.Template:
    settings = {"app_repo_url": REPO_URL, "ssh_allowed_cidr": "203.0.113.0/24"}
    settings.update(overrides)
    config = DeploymentConfig(**settings).validate()

    app = core.App()
    stack = FlaskEc2Stack(app, "flask-app-stack", config=config)
    return assertions.Template.from_stack(stack)


def test_network_resources_created():
    template = build_template()

    template.resource_count_is("AWS::EC2::VPC", 1)
    template.resource_count_is("AWS::EC2::Subnet", 1)
    template.resource_count_is("AWS::EC2::InternetGateway", 1)
    template.resource_count_is("AWS::EC2::NatGateway", 0)

    template.has_resource_properties("AWS::EC2::VPC", {
        "CidrBlock": "10.0.0.0/16",
        "EnableDnsHostnames": True,
        "EnableDnsSupport": True,
    })
    template.has_resource_properties("AWS::EC2::Subnet", {
        "CidrBlock": "10.0.0.0/24",
        "MapPublicIpOnLaunch": True,
    })


def test_security_group_allows_ssh_and_http_only():
    template = build_template()

    template.has_resource_properties("AWS::EC2::SecurityGroup", {
        "SecurityGroupIngress": assertions.Match.array_with([
            assertions.Match.object_like({
                "CidrIp": "203.0.113.0/24",
                "FromPort": 22,
                "IpProtocol": "tcp",
                "ToPort": 22,
            }),
            assertions.Match.object_like({
                "CidrIp": "0.0.0.0/0",
                "FromPort": 80,
                "IpProtocol": "tcp",
                "ToPort": 80,
            }),
        ]),
    })

    groups = template.find_resources("AWS::EC2::SecurityGroup")
    ports = {
        rule["FromPort"]
        for resource in groups.values()
        for rule in resource["Properties"].get("SecurityGroupIngress", [])
    }
    assert ports == {22, 80}


def test_instance_properties():
    template = build_template(instance_type="t3.small", root_volume_size=30)

    template.resource_count_is("AWS::EC2::Instance", 1)
    template.has_resource_properties("AWS::EC2::Instance", {
        "InstanceType": "t3.small",
        "KeyName": assertions.Match.any_value(),
        "UserData": assertions.Match.any_value(),
        "BlockDeviceMappings": [
            {
                "DeviceName": "/dev/sda1",
                "Ebs": assertions.Match.object_like({
                    "VolumeSize": 30,
                    "VolumeType": "gp3",
                    "Encrypted": True,
                    "DeleteOnTermination": True,
                }),
            }
        ],
    })


def test_user_data_clones_configured_repo():
    template = build_template(app_branch="release")

    instances = template.find_resources("AWS::EC2::Instance")
    rendered = json.dumps(instances)

    assert f"git clone --depth 1 --branch release {REPO_URL} /opt/flask-app" in rendered
    assert "proxy_pass http://127.0.0.1:5000;" in rendered


def test_elastic_ip_associated_with_instance():
    template = build_template()

    template.resource_count_is("AWS::EC2::EIP", 1)
    template.has_resource_properties("AWS::EC2::EIP", {"Domain": "vpc"})
    template.has_resource_properties("AWS::EC2::EIPAssociation", {
        "AllocationId": {"Fn::GetAtt": [assertions.Match.any_value(), "AllocationId"]},
        "InstanceId": {"Ref": assertions.Match.string_like_regexp("AppInstance")},
    })


def test_log_group_retention_and_removal():
    template = build_template(log_retention_days=14)

    template.has_resource("AWS::Logs::LogGroup", {
        "Properties": {
            "LogGroupName": "/flask-app/app",
            "RetentionInDays": 14,
        },
        "DeletionPolicy": "Delete",
    })


def test_instance_role_can_ship_logs():
    template = build_template()

    roles = template.find_resources("AWS::IAM::Role")
    assert "CloudWatchAgentServerPolicy" in json.dumps(roles)


def test_generated_key_pair_exposes_parameter():
    template = build_template()

    template.has_resource_properties("AWS::EC2::KeyPair", {
        "KeyName": "flask-app-key",
    })
    template.has_output("PrivateKeyParameter", {})


def test_imported_key_pair_uses_public_key():
    template = build_template(public_key=PUBLIC_KEY, key_name="deploy-key")

    template.has_resource_properties("AWS::EC2::KeyPair", {
        "KeyName": "deploy-key",
        "PublicKeyMaterial": PUBLIC_KEY,
    })
    assert template.find_outputs("PrivateKeyParameter") == {}


def test_outputs():
    template = build_template()

    for name in ("InstanceId", "PublicIp", "AppUrl", "SshCommand", "LogGroupName"):
        template.has_output(name, {})


def test_project_tag_applied():
    template = build_template(project_name="demo", tags={"Owner": "platform"})

    template.has_resource_properties("AWS::EC2::VPC", {
        "Tags": assertions.Match.array_with([
            {"Key": "Owner", "Value": "platform"},
            {"Key": "Project", "Value": "demo"},
        ]),
    })
