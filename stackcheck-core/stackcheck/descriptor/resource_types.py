"""
The resource taxonomy known to stackcheck, with the attributes each type exposes via ``Fn::GetAtt``.

Types outside of this taxonomy are accepted (their attributes are not checked) unless strict resource types are
enabled in the configuration.
"""

# maps resource type to the attribute names available via Fn::GetAtt
RESOURCE_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    "AWS::EC2::Instance": (
        "AvailabilityZone",
        "InstanceId",
        "PrivateDnsName",
        "PrivateIp",
        "PublicDnsName",
        "PublicIp",
        "VpcId",
    ),
    "AWS::EC2::SecurityGroup": ("GroupId", "VpcId"),
    "AWS::EC2::Volume": ("VolumeId",),
    "AWS::RDS::DBInstance": (
        "CertificateDetails.CAIdentifier",
        "CertificateDetails.ValidTill",
        "DBInstanceArn",
        "DBSystemId",
        "DbiResourceId",
        "Endpoint.Address",
        "Endpoint.HostedZoneId",
        "Endpoint.Port",
        "MasterUserSecret.SecretArn",
    ),
    "AWS::RDS::DBCluster": (
        "DBClusterArn",
        "DBClusterResourceId",
        "Endpoint.Address",
        "Endpoint.Port",
        "ReadEndpoint.Address",
        "MasterUserSecret.SecretArn",
    ),
    "AWS::RDS::DBSubnetGroup": (),
    "AWS::S3::Bucket": (
        "Arn",
        "DomainName",
        "DualStackDomainName",
        "RegionalDomainName",
        "WebsiteURL",
    ),
    "AWS::DynamoDB::Table": ("Arn", "StreamArn"),
    "AWS::SNS::Topic": ("TopicArn", "TopicName"),
}

# resources holding data that is lost on deletion
STATEFUL_RESOURCE_TYPES = (
    "AWS::DynamoDB::Table",
    "AWS::EC2::Volume",
    "AWS::RDS::DBCluster",
    "AWS::RDS::DBInstance",
    "AWS::S3::Bucket",
)

# resources which support the `Snapshot` deletion policy
SNAPSHOT_RESOURCE_TYPES = (
    "AWS::DocDB::DBCluster",
    "AWS::EC2::Volume",
    "AWS::ElastiCache::CacheCluster",
    "AWS::ElastiCache::ReplicationGroup",
    "AWS::Neptune::DBCluster",
    "AWS::RDS::DBCluster",
    "AWS::RDS::DBInstance",
    "AWS::Redshift::Cluster",
)


def is_known_type(resource_type: str) -> bool:
    return resource_type in RESOURCE_ATTRIBUTES


def is_custom_type(resource_type: str) -> bool:
    return resource_type.startswith("Custom::") or resource_type == "AWS::CloudFormation::CustomResource"


def has_attribute(resource_type: str, attribute: str) -> bool:
    """Whether the given attribute can be read from the resource type. Unknown and custom types expose any."""
    if not is_known_type(resource_type):
        return True
    return attribute in RESOURCE_ATTRIBUTES[resource_type]
