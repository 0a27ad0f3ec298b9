"""
Approval workflow API URLs.
"""
from django.urls import path
from apps.approvals.views import (
    ApprovalListView,
    ApprovalApproveView,
    ApprovalRejectView,
    ApprovalCancelView,
    ApprovalApplyView,
    OwnerRequestListView,
)

app_name = 'approvals'

urlpatterns = [
    path('approvals', ApprovalListView.as_view(), name='approval-list'),
    path('approvals/<uuid:approval_id>/approve', ApprovalApproveView.as_view(), name='approval-approve'),
    path('approvals/<uuid:approval_id>/reject', ApprovalRejectView.as_view(), name='approval-reject'),
    path('approvals/<uuid:approval_id>/cancel', ApprovalCancelView.as_view(), name='approval-cancel'),
    path('approvals/<uuid:approval_id>/apply', ApprovalApplyView.as_view(), name='approval-apply'),

    # Owner change requests share the approval workflow
    path('owners/requests', OwnerRequestListView.as_view(), name='owner-request-list'),
]
