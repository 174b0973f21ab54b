# kindprov

`kindprov` manages the container "nodes" of a local Kubernetes cluster by
calling the `docker` or `podman` command-line tools. For Docker it covers the
whole provider layer: it pulls node images, makes sure the cluster network
exists, builds `docker run` arguments, creates, lists and deletes nodes, finds
the API server endpoint and collects debug logs. For Podman it has the image,
volume, version and network helpers.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

At runtime the package uses only the standard library. Docker or Podman must
be on `PATH` for the functions that talk to a container engine.

## Describing a cluster

You describe a cluster with plain dataclasses from `kindprov.model`:

```python
from kindprov.model import Cluster, ClusterNode, NodeRole

cfg = Cluster(name="kind")
cfg.nodes = [
    ClusterNode(role=NodeRole.CONTROL_PLANE, image="kindest/node:v1.21.1"),
    ClusterNode(role=NodeRole.WORKER, image="kindest/node:v1.21.1"),
]
```

`Networking` holds the IP family (`ClusterIPFamily`), the API server address
and port, and the pod and service subnets. Nodes can carry extra `Mount`s and
`PortMapping`s.

## Provisioning with Docker

```python
import logging

from kindprov.docker_provider import DockerProvider
from kindprov.model import Status

provider = DockerProvider(logging.getLogger("kind"))
provider.provision(Status(), cfg)

print(provider.list_clusters())
print(provider.get_api_server_endpoint("kind"))
print(provider.info())

nodes = provider.list_nodes("kind")
provider.collect_logs("/tmp/kind-logs", nodes)
provider.delete_nodes(nodes)
```

`Status` writes progress lines to standard error, or to a stream you pass in.
The network is called `kind`. You can override that with the
`KIND_EXPERIMENTAL_DOCKER_NETWORK` environment variable.

If more than one control-plane node is configured, an external load balancer
container is planned as well. Its image must be given as
`DockerProvider(..., load_balancer_image=...)`. If it is missing,
`provision` raises `ClusterError`. No default image is built in.

`collect_logs` writes `docker info`, and for each node its inspect output,
serial log, Kubernetes version and journal logs. It copies a node's
`/var/log` only if you pass a `dump_dir` callable
(`dump_dir(node, "/var/log", path)`) to the constructor.

## Working with nodes

`kindprov.nodeutils` selects nodes by role. It also runs helpers inside a node
container:

```python
from kindprov import nodeutils

cp = nodeutils.bootstrap_control_plane_node(nodes)
print(nodeutils.kube_version(cp))
nodeutils.write_file(cp, "/etc/example.conf", "key = value\n")
```

It also has `internal_nodes`, `external_load_balancer_node`,
`api_server_endpoint_node`, `copy_node_to_node`, `load_image_archive` and
`image_id`. Nodes returned by a provider are
`kindprov.container_node.ContainerNode` objects. Their `command(...)` runs
through `<engine> exec --privileged`.

## Helpers

- `kindprov.common.make_node_namer` returns a function that names each node
  after its role: `kind-control-plane`, `kind-worker`, `kind-worker2`, and so
  on.
- `kindprov.common.get_proxy_envs` gathers `HTTP_PROXY`, `HTTPS_PROXY` and
  `NO_PROXY` from the environment. If any of them is set, it adds the
  cluster's service and pod subnets to `NO_PROXY`.
- `kindprov.common.port_or_get_free_port` keeps a set port, maps `-1` to `0`
  and picks a free port for `0`.
- `kindprov.docker_network.generate_ula_subnet_from_name` derives a stable IPv6
  ULA `/64` subnet from a network name. `ensure_network` creates the network,
  removes duplicates, and tries other subnets if a subnet is already in use.
- `kindprov.podman_network.ensure_network` does the same job for Podman.
- `kindprov.podman_images.sanitize_image` expands short image references into
  fully qualified names that Podman can pull. `ensure_min_version` checks that
  Podman is at least 1.8.0.
- `kindprov.docker_images.is_available` and `kindprov.podman_images.is_available`
  tell you whether each engine is installed.

## What it does not do

- There is no Podman provider class. The Podman modules offer helpers only,
  with no planning of `podman run` arguments and no node listing or
  deletion.
- There is no command-line program. The package is a library.
- It does not pick an engine for you. Use the `is_available` helpers
  yourself.
- It only provisions the node containers. It does not bootstrap Kubernetes
  inside them, and it does not write or export kubeconfig files.

## Errors

Failures raise `kindprov.model.ClusterError`. When a command exits with a
non-zero status, `kindprov.process.RunError` is raised; it carries the
command's combined output. When several concurrent tasks fail, their errors
are collected into a `kindprov.common.AggregateError`.