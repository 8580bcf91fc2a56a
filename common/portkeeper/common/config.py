import contextvars
import logging
import logging.config
import os
import typing as t

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict, YamlConfigSettingsSource


#: The configuration path for the configuration object currently being built
_CONFIG_PATH: contextvars.ContextVar[t.Optional[str]] = contextvars.ContextVar(
    "config_path",
    default = None
)


class LessThanLevelFilter(logging.Filter):
    def __init__(self, level):
        if isinstance(level, int):
            self.level = level
        else:
            self.level = getattr(logging, level.upper())

    def filter(self, record):
        return record.levelno < self.level


def default_formatters():
    return {
        "default": {
            "format": "[%(levelname)s] %(name)s: %(message)s",
        },
    }


def default_filters():
    return {
        # This filter allows us to send >= WARNING to stderr and < WARNING to stdout
        "less_than_warning": {
            "()": f"{__name__}.LessThanLevelFilter",
            "level": "WARNING",
        },
    }


def default_handlers():
    return {
        "stdout": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "default",
            "filters": ["less_than_warning"],
        },
        "stderr": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "default",
            "level": "WARNING",
        },
    }


def default_loggers():
    return {
        "": {
            "handlers": ["stdout", "stderr"],
            "level": "INFO",
            "propagate": True,
        },
    }


class Section(BaseModel):
    """
    Base class for a configuration section.
    """
    model_config = ConfigDict(extra = "forbid")


class LoggingConfiguration(BaseModel):
    """
    Model for the logging configuration.

    See https://docs.python.org/3/library/logging.config.html#logging-config-dictschema
    """
    model_config = ConfigDict(extra = "allow")

    version: int = 1
    disable_existing_loggers: bool = False
    formatters: t.Dict[str, t.Dict[str, t.Any]] = Field(default_factory = default_formatters)
    filters: t.Dict[str, t.Dict[str, t.Any]] = Field(default_factory = default_filters)
    handlers: t.Dict[str, t.Dict[str, t.Any]] = Field(default_factory = default_handlers)
    loggers: t.Dict[str, t.Dict[str, t.Any]] = Field(default_factory = default_loggers)

    def apply(self):
        """
        Apply the logging configuration to the logging system.
        """
        logging.config.dictConfig(self.model_dump())


class Configuration(BaseSettings):
    """
    Base model for a configuration.

    Values are taken from keyword arguments, then environment variables, then the
    YAML configuration file, in that order of precedence. The file is the explicit
    path if given, otherwise the path in the environment variable named by
    ``path_env_var``, otherwise ``default_path``.
    """
    model_config = SettingsConfigDict(env_nested_delimiter = "__", extra = "forbid")

    #: The default path of the configuration file
    default_path: t.ClassVar[t.Optional[str]] = None
    #: The environment variable that can be used to override the configuration path
    path_env_var: t.ClassVar[t.Optional[str]] = None

    def __init__(self, _path: t.Optional[str] = None, **kwargs):
        token = _CONFIG_PATH.set(_path)
        try:
            super().__init__(**kwargs)
        finally:
            _CONFIG_PATH.reset(token)

    @classmethod
    def config_path(cls) -> t.Optional[str]:
        """
        Returns the path of the configuration file to use.
        """
        path = _CONFIG_PATH.get()
        if not path and cls.path_env_var:
            path = os.environ.get(cls.path_env_var)
        return path or cls.default_path

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings
    ):
        sources = [init_settings, env_settings]
        path = cls.config_path()
        if path:
            # Missing files are skipped by the YAML source
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file = path))
        return tuple(sources)
