import dataclasses
import enum
import typing


#: The service type for which listeners are maintained
NODE_PORT = "NodePort"


@dataclasses.dataclass(frozen = True)
class ServicePort:
    """
    Represents a port mapping for a service.
    """
    #: The port exposed by the service inside the cluster
    port: int
    #: The port reserved on every node, if one has been allocated
    node_port: typing.Optional[int] = None
    #: The name of the port, if given
    name: typing.Optional[str] = None
    #: The protocol for the port
    protocol: str = "TCP"


@dataclasses.dataclass(frozen = True)
class Service:
    """
    Represents a snapshot of a Kubernetes service as received from the cluster.
    """
    #: The namespace of the service
    namespace: str
    #: The name of the service
    name: str
    #: The type of the service, e.g. ClusterIP or NodePort
    type: str = "ClusterIP"
    #: The port mappings for the service, in the order the cluster reports them
    ports: typing.Sequence[ServicePort] = ()

    @property
    def is_node_port(self) -> bool:
        return self.type == NODE_PORT

    @property
    def node_ports(self) -> typing.List[int]:
        """
        The allocated node ports for the service, in port order.
        """
        return [p.node_port for p in self.ports if p.node_port]


@enum.unique
class EventKind(enum.Enum):
    """
    Represents the possible event types for services.
    """
    #: Represents a newly created service
    CREATED = "CREATED"
    #: Represents an updated service
    UPDATED = "UPDATED"
    #: Represents a deleted service
    DELETED = "DELETED"


@dataclasses.dataclass(frozen = True)
class Event:
    """
    Class representing an event for a service.
    """
    #: The kind of the event
    kind: EventKind
    #: The state of the service that the event affects
    service: Service

    @property
    def deleted(self) -> bool:
        return self.kind == EventKind.DELETED
