"""Parent-frame bridge for applications embedded in the portal."""

from b24sdk.integrations.frame.bridge import MessageBridge, ParentCommand, ParentCommands, Slider

__all__ = ["MessageBridge", "ParentCommand", "ParentCommands", "Slider"]
