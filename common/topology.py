"""Declared topology of the RealWorld serverless backend."""
from provisioning.model import Declarations

from common.stack_context import StackContext
from identity.iam_stack import IamStack
from networking.networking_stack import NetworkingStack


def realworld_declarations(context: StackContext) -> Declarations:
    """IAM and Network stacks, with IAM deployed first.

    The Network stack holds no reference into IAM; the ordering comes from the
    explicit dependency only.
    """
    iam_stack = IamStack(context)
    networking_stack = NetworkingStack(context, depends_on=[iam_stack.name])
    return Declarations(
        stacks=[iam_stack.declare(), networking_stack.declare()],
        intents=networking_stack.intents(),
    )

