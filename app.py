#!/usr/bin/env python3
import sys

import aws_cdk as cdk

from flask_ec2_iac.config import ConfigError, load_config
from flask_ec2_iac.ec2_stack import FlaskEc2Stack
from flask_ec2_iac.logger import get_logger

logger = get_logger()

app = cdk.App()

try:
    config = load_config(app.node)
except ConfigError as exc:
    logger.error("Invalid configuration: %s", exc)
    sys.exit(1)

env = cdk.Environment(
    account=config.account,
    region=config.region,
)

FlaskEc2Stack(
    app,
    f"{config.project_name}-stack",
    config=config,
    env=env,
    description=f"Flask app {config.project_name} on a single EC2 host behind Nginx",
)

app.synth()
