import typing as t

from pydantic import TypeAdapter, Field, AnyHttpUrl as PyAnyHttpUrl
from pydantic.functional_validators import AfterValidator
from pydantic_settings import SettingsConfigDict

from portkeeper.common.config import Configuration, LoggingConfiguration


#: Type for a string that validates as a URL
AnyHttpUrl = t.Annotated[
    str,
    AfterValidator(lambda v: str(TypeAdapter(PyAnyHttpUrl).validate_python(v)))
]


def strip_trailing_slash(v: str) -> str:
    """
    Strips trailing slashes from the given string.
    """
    return v.rstrip("/")


class ProxyConfig(Configuration):
    """
    Configuration model for the proxy command.
    """
    model_config = SettingsConfigDict(env_prefix = "PORTKEEPER_PROXY_")

    default_path: t.ClassVar[t.Optional[str]] = "/etc/portkeeper/proxy.yaml"
    path_env_var: t.ClassVar[t.Optional[str]] = "PORTKEEPER_PROXY_CONFIG"

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory = LoggingConfiguration)

    #: Indicates whether we are in debug mode
    debug: bool = False

    #: The address to listen on
    listen_address: str = "127.0.0.1"
    #: The port to listen on
    listen_port: t.Annotated[int, Field(gt = 0, lt = 65536)] = 6443
    #: The URL of the upstream server that all requests are forwarded to
    upstream_url: t.Annotated[AnyHttpUrl, AfterValidator(strip_trailing_slash)] = (
        "http://192.168.1.2:6443"
    )
    #: Indicates whether to verify the TLS certificate of the upstream server
    verify_ssl: bool = True
    #: The time in seconds to wait for in-flight requests when shutting down
    shutdown_timeout: t.Annotated[float, Field(ge = 0)] = 5.0
