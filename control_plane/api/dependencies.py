#control_plane\api\dependencies.py
from control_plane import container


def get_target_repository():
    return container.target_repository


def get_run_repository():
    return container.run_repository


def get_deployment_service():
    return container.deployment_service


def get_queue_service():
    return container.queue_service
