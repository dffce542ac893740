"""
General-purpose helpers not related to the controller itself
(neither to the reactor nor to the engines nor to the structs),
which are used to prepare and control the runtime environment.
"""
