APP_NAME = "ssm-tunnel"
AUTHOR = "ssm-tunnel"

port_forwarding_document = "AWS-StartPortForwardingSessionToRemoteHost"

# Keys shared between the launch and cleanup invocations
session_id_key = "session-id"
region_key = "aws-region"
process_pid_key = "process-pid"

default_readiness_timeout = 45.0
terminate_grace_period = 2.0
