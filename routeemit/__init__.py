"""Route registration for long-running processes: the LRP and event model, endpoints and registry messages, message matchers, and an event handler."""

__version__ = "0.1.0"
__all__ = ["handler", "lrp", "matchers", "routing"]