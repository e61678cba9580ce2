from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ephemera.deployment.container import ContainerState


class DeploymentHook:
    """Observes the lifecycle of a :class:`~ephemera.deployment.container.ContainerDeployment`.

    Hooks must not raise; they are called synchronously from the deployment.
    """

    def on_state_change(self, old: "ContainerState", new: "ContainerState") -> None: ...

    def on_custom_step(self, message: str) -> None: ...


class CombinedDeploymentHook(DeploymentHook):
    def __init__(self) -> None:
        self._hooks: list[DeploymentHook] = []

    def add_hook(self, hook: DeploymentHook) -> None:
        self._hooks.append(hook)

    def on_state_change(self, old: "ContainerState", new: "ContainerState") -> None:
        for hook in self._hooks:
            hook.on_state_change(old, new)

    def on_custom_step(self, message: str) -> None:
        for hook in self._hooks:
            hook.on_custom_step(message)
