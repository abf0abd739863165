"""Errors raised while constructing a shell environment.

Every one of them is fatal to environment setup: nothing retries and
nothing falls back to a partial environment. Messages name the channel,
URL or attribute at fault so the descriptor can be fixed.
"""


class PinixError(Exception):
    pass


class UnknownChannelError(PinixError):
    def __init__(self, channel: str, detail: str | None = None):
        msg = f"unknown channel: {channel!r}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.channel = channel


class UnavailableComponentError(UnknownChannelError):
    def __init__(self, channel: str, component: str, target: str):
        super().__init__(channel, f"no {component} for target {target}")
        self.component = component
        self.target = target


class CatalogUnavailableError(PinixError):
    def __init__(self, url: str, reason: object = None):
        msg = f"channel catalog unavailable: {url}"
        if reason is not None:
            msg += f": {reason}"
        super().__init__(msg)
        self.url = url


class CatalogFormatError(PinixError):
    def __init__(self, url: str, reason: object):
        super().__init__(f"malformed channel catalog {url}: {reason}")
        self.url = url


class MissingToolchainBindingError(PinixError):
    def __init__(self, name: str, binding: str = "toolchain"):
        super().__init__(f"environment {name!r} built without a resolved {binding}")
        self.name = name
        self.binding = binding


class OverlayConflictError(PinixError):
    def __init__(self, name: str, overlay: str):
        super().__init__(f"overlay {overlay!r} shadows existing attribute {name!r}")
        self.name = name
        self.overlay = overlay


class CircularOverlayError(PinixError):
    def __init__(self, cycle: list[str]):
        super().__init__("infinite recursion evaluating " + " -> ".join(cycle))
        self.cycle = cycle


class FetchError(PinixError):
    def __init__(self, url: str, reason: object):
        super().__init__(f"failed to fetch {url}: {reason}")
        self.url = url


class DescriptorError(PinixError):
    def __init__(self, path: object, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
