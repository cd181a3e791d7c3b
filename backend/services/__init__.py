"""
Services package - tool implementations and the chat runtime.

Import specific modules directly:
    from services.search_tool import SearchTool
    from services.chat_runtime import start_chat_runtime
"""

# Don't import modules here to avoid circular imports.
# Consumers should import from submodules directly.
