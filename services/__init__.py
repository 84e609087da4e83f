# services/__init__.py
from .enrollment_service import EnrollmentService, trigger_enrollment
from .order_id import generate_order_id
from .payment_orchestrator import PaymentOrchestrator, LaunchDescriptor
from .reconciliation_service import PaymentReconciler, ReconciliationReport

__all__ = [
     "EnrollmentService",
     "trigger_enrollment",
     "generate_order_id",
     "PaymentOrchestrator",
     "LaunchDescriptor",
     "PaymentReconciler",
     "ReconciliationReport",
]
