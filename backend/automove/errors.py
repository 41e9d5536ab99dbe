class AutomoveError(Exception):
    pass


class ConfigurationError(AutomoveError, ValueError):
    """Raised when a rule option has a shape no compiler recognises."""

    def __init__(self, option: str, value: object):
        self.option = option
        self.value = value
        super().__init__(f"Can not compile {option} from {value!r}")
