import os

import stackcheck

# stackcheck version
VERSION = stackcheck.__version__

# default AWS region used when nothing is configured
DEFAULT_AWS_REGION = "us-east-1"

# folder for user specific configuration (dotenv profiles)
CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".stackcheck")

# truthy values for environment variables
TRUE_STRINGS = ("1", "true", "True")

# log levels accepted by SC_LOG
LOG_LEVELS = ("trace-internal", "trace", "debug", "info", "warn", "error", "warning")
TRACE_LOG_LEVELS = ("trace", "trace-internal")

# replacement for values of NoEcho parameters in any rendered output
MASKED_VALUE = "****"

# template format versions accepted in `AWSTemplateFormatVersion`
TEMPLATE_FORMAT_VERSIONS = ("2010-09-09",)

# pseudo parameters supplied by the orchestrator itself
PSEUDO_PARAMETERS = (
    "AWS::AccountId",
    "AWS::NotificationARNs",
    "AWS::NoValue",
    "AWS::Partition",
    "AWS::Region",
    "AWS::StackId",
    "AWS::StackName",
    "AWS::URLSuffix",
)

# maximum wait time of a `CreationPolicy.ResourceSignal.Timeout`
MAX_SIGNAL_TIMEOUT_SECONDS = 12 * 60 * 60
