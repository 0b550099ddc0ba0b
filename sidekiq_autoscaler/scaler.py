import logging
import math
from fractions import Fraction
from typing import Dict, Mapping, Union

from sidekiq_autoscaler.config import Config, DeploymentSpec


def replicas_for_percentage(deployment: DeploymentSpec, percentage: Union[float, Fraction]) -> int:
    """
    Interpolate a replica count between a deployment's bounds.

    The deployment runs min_replicas for an empty queue and max_replicas once
    the queue reaches its threshold (percentage 1.0). Intermediate values are
    rounded half up, so 0.5 of a 0..5 span gives 3, not 2.

    Args:
        deployment: Deployment whose bounds apply
        percentage: Queue length divided by its threshold, non-negative and
                    possibly above 1.0. A Fraction keeps ties exact

    Returns:
        int: Desired replica count within [min_replicas, max_replicas], and at
             least 1 whenever percentage is above zero
    """
    span = deployment.max_replicas - deployment.min_replicas
    replicas = deployment.min_replicas + math.floor(span * percentage + Fraction(1, 2))

    if replicas < deployment.min_replicas:
        replicas = deployment.min_replicas
    elif replicas > deployment.max_replicas:
        replicas = deployment.max_replicas

    # Pending jobs always get a worker, even when interpolation rounds to zero
    if replicas == 0 and percentage > 0:
        logging.info(f"Ensuring at least 1 replica for {deployment.name} since its queue is not empty "
                     f"(percentage {float(percentage):.4f})")
        replicas = 1

    return replicas


def replicas_for_unconfigured_queue(deployment: DeploymentSpec) -> int:
    """Replica count for a queue that has no threshold configured."""
    return deployment.min_replicas if deployment.min_replicas > 0 else 1


def replicas(config: Config, queue_lengths: Mapping[str, int]) -> Dict[str, int]:
    """
    Calculate desired replicas for every deployment serving an observed queue.

    A deployment serving several queues gets the largest of the counts its
    queues ask for. Deployments whose queues are all absent from queue_lengths
    are left out of the result rather than set to zero.

    Args:
        config: Scaling configuration
        queue_lengths: Pending job count per queue name

    Returns:
        dict: Desired replica count per deployment name
    """
    result: Dict[str, int] = {}

    for queue, jobs in queue_lengths.items():
        deployments = config.deployments_for(queue)
        if not deployments:
            logging.debug(f"Queue {queue} ({jobs} jobs) is not served by any configured deployment")
            continue

        threshold = config.autoscaling.threshold_for(queue)

        for deployment in deployments:
            if threshold is None:
                candidate = replicas_for_unconfigured_queue(deployment)
                logging.info(f"Queue {queue} has no threshold configured, using {candidate} replicas "
                             f"for {deployment.name} ({jobs} jobs)")
            else:
                # Float division can land a tie such as 11 * 15 / 22 just below .5
                percentage = Fraction(jobs, threshold)
                candidate = replicas_for_percentage(deployment, percentage)
                logging.info(f"Queue {queue} has {jobs} jobs ({float(percentage):.1%} of threshold {threshold}), "
                             f"{deployment.name} wants {candidate} replicas")

            current = result.get(deployment.name)
            if current is None or candidate > current:
                result[deployment.name] = candidate
            else:
                logging.debug(f"Keeping {current} replicas for {deployment.name}, "
                              f"queue {queue} only asks for {candidate}")

    return result
