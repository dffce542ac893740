"""
Toolkits to manipulate the objects in the context of the controller.
"""
