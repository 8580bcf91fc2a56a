import typing as t

from pydantic import Field, StringConstraints
from pydantic_settings import SettingsConfigDict

from portkeeper.common.config import Configuration, LoggingConfiguration, Section


#: Type for a non-empty string
NonEmptyString = t.Annotated[str, StringConstraints(min_length = 1)]

#: Type for a TCP port number
Port = t.Annotated[int, Field(gt = 0, lt = 65536)]


class KubernetesConfig(Section):
    """
    Model for the Kubernetes configuration section.
    """
    #: The namespace to watch for services
    #: If not given, services in all namespaces are watched
    namespace: t.Optional[NonEmptyString] = None
    #: The client-side timeout in seconds for requests to the API server
    request_timeout: t.Annotated[int, Field(gt = 0)] = 10
    #: The server-side timeout in seconds for each watch request
    #: When a watch request times out, it is reissued from the last seen resource version
    watch_timeout: t.Annotated[int, Field(gt = 0)] = 300


class MetricsConfig(Section):
    """
    Model for the metrics configuration section.
    """
    #: Indicates whether the metrics server should be started
    enabled: bool = False
    #: The address for the metrics server to listen on
    address: NonEmptyString = "127.0.0.1"
    #: The port for the metrics server to listen on
    port: Port = 8080


class SyncConfig(Configuration):
    """
    Configuration model for the portkeeper-sync package.
    """
    model_config = SettingsConfigDict(env_prefix = "PORTKEEPER_SYNC_")

    default_path: t.ClassVar[t.Optional[str]] = "/etc/portkeeper/sync.yaml"
    path_env_var: t.ClassVar[t.Optional[str]] = "PORTKEEPER_SYNC_CONFIG"

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory = LoggingConfiguration)

    #: The name of the client type to use
    client_type: NonEmptyString = "kubernetes"
    #: The path to the kubeconfig file for the cluster
    #: The file does not need to exist when the service starts
    kubeconfig_path: NonEmptyString = "~/.kube/config"
    #: The address to open listeners on for each node port
    listen_address: NonEmptyString = "127.0.0.1"
    #: The fixed delay in seconds between attempts to recover from a transient error
    retry_interval: t.Annotated[float, Field(gt = 0)] = 1.0

    #: The Kubernetes configuration
    kubernetes: KubernetesConfig = Field(default_factory = KubernetesConfig)
    #: The metrics configuration
    metrics: MetricsConfig = Field(default_factory = MetricsConfig)
