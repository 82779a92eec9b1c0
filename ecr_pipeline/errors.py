class DeployError(Exception):
    """Base class for every failure raised by the deployment tooling."""


class ConfigFileNotFound(DeployError):
    def __init__(self, path):
        self.path = path
        super().__init__(
            f"{path} not found. Please create it with the required variables."
        )


class MissingConfig(DeployError):
    def __init__(self, keys: list[str], paths: list[str] = ()):
        self.keys = list(keys)
        self.paths = list(paths)
        message = f"Missing required configuration: {', '.join(self.keys)}"
        if self.paths:
            message += f"; missing required files: {', '.join(self.paths)}"
        super().__init__(message)


class MissingArtifact(DeployError):
    def __init__(self, paths: list[str]):
        self.paths = list(paths)
        super().__init__(f"Missing required files: {', '.join(self.paths)}")


class BuildFailed(DeployError):
    def __init__(self, stderr: str):
        self.stderr = stderr
        super().__init__(stderr)


class EngineUnavailable(BuildFailed):
    """The build engine could not be reached."""


class AuthFailed(DeployError):
    pass


class RepositoryFailed(DeployError):
    pass


class PushFailed(DeployError):
    pass


class PullFailed(DeployError):
    pass


class NotFound(DeployError):
    """Nothing to pull: the repository or tag does not exist."""


class InvalidConfig(DeployError):
    pass
