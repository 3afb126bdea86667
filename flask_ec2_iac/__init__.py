"""CDK app provisioning a single EC2 host that serves a Flask app behind Nginx."""
