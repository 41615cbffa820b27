"""JSON representations of ledger rows for the API blueprints."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from utils import isoformat, load_json


def money(value) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


def plan_json(plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "description": plan.description,
        "monthlyPrice": money(plan.monthly_price),
        "annualPrice": money(plan.annual_price),
        "currency": plan.currency,
        "monthlyPriceInr": money(plan.monthly_price_inr) if plan.inr_enabled else None,
        "annualPriceInr": money(plan.annual_price_inr) if plan.inr_enabled else None,
        "inrEnabled": bool(plan.inr_enabled),
        "trialDays": plan.trial_days or 0,
        "limits": {
            "maxAgents": plan.max_agents,
            "maxConversationsPerMonth": plan.max_conversations_per_month,
            "maxMessagesPerMonth": plan.max_messages_per_month,
            "maxStorageMb": plan.max_storage_mb,
            "maxAiAnalysesPerMonth": plan.max_ai_analyses_per_month,
            "maxAiAutoRepliesPerMonth": plan.max_ai_auto_replies_per_month,
            "maxFileSizeMb": plan.max_file_size_mb,
            "messageHistoryDays": plan.message_history_days,
        },
        "features": {
            "aiAnalysis": bool(plan.ai_analysis_enabled),
            "aiAutoReply": bool(plan.ai_auto_reply_enabled),
        },
        "isActive": bool(plan.is_active),
        "isPublic": bool(plan.is_public),
        "sortOrder": plan.sort_order or 0,
    }


def subscription_json(sub, plan=None) -> dict:
    data = {
        "id": sub.id,
        "siteId": sub.site_id,
        "planId": sub.plan_id,
        "status": sub.status,
        "billingCycle": sub.billing_cycle,
        "currentPeriodStart": isoformat(sub.current_period_start),
        "currentPeriodEnd": isoformat(sub.current_period_end),
        "trialStart": isoformat(sub.trial_start),
        "trialEnd": isoformat(sub.trial_end),
        "canceledAt": isoformat(sub.canceled_at),
        "cancelAt": isoformat(sub.cancel_at),
        "cancelAtPeriodEnd": bool(sub.cancel_at_period_end),
        "graceEndsAt": isoformat(sub.grace_ends_at),
        "autoPayEnabled": bool(sub.auto_pay_enabled),
        "preferredGateway": sub.preferred_gateway,
        "defaultPaymentMethodId": sub.default_payment_method_id,
        "stripeSubscriptionId": sub.stripe_subscription_id,
        "createdAt": isoformat(sub.created_at),
    }
    if plan is not None:
        data["plan"] = plan_json(plan)
    return data


def history_json(row) -> dict:
    return {
        "id": row.id,
        "subscriptionId": row.subscription_id,
        "action": row.action,
        "fromPlanId": row.from_plan_id,
        "toPlanId": row.to_plan_id,
        "fromStatus": row.from_status,
        "toStatus": row.to_status,
        "reason": row.reason,
        "actor": row.actor,
        "createdAt": isoformat(row.created_at),
    }


def payment_method_json(method) -> dict:
    return {
        "id": method.id,
        "gateway": method.gateway,
        "type": method.method_type,
        "brand": method.brand,
        "last4": method.last4,
        "expMonth": method.exp_month,
        "expYear": method.exp_year,
        "isDefault": bool(method.is_default),
        "createdAt": isoformat(method.created_at),
    }


def invoice_json(invoice) -> dict:
    return {
        "id": invoice.id,
        "number": invoice.number,
        "siteId": invoice.site_id,
        "subscriptionId": invoice.subscription_id,
        "status": invoice.status,
        "subtotal": money(invoice.subtotal),
        "discount": money(invoice.discount),
        "tax": money(invoice.tax),
        "total": money(invoice.total),
        "amountPaid": money(invoice.amount_paid),
        "amountDue": money(invoice.amount_due),
        "currency": invoice.currency,
        "periodStart": isoformat(invoice.period_start),
        "periodEnd": isoformat(invoice.period_end),
        "paidAt": isoformat(invoice.paid_at),
        "externalInvoiceId": invoice.external_invoice_id,
        "description": invoice.description,
        "createdAt": isoformat(invoice.created_at),
    }


def payment_json(payment, refunded=None) -> dict:
    data = {
        "id": payment.id,
        "siteId": payment.site_id,
        "invoiceId": payment.invoice_id,
        "subscriptionId": payment.subscription_id,
        "planId": payment.plan_id,
        "billingCycle": payment.billing_cycle,
        "amount": money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "gateway": payment.gateway,
        "orderId": payment.gateway_order_id,
        "transactionId": payment.gateway_payment_id,
        "paymentReference": payment.payment_reference,
        "failureReason": payment.failure_reason,
        "paidAt": isoformat(payment.paid_at),
        "createdAt": isoformat(payment.created_at),
    }
    if refunded is not None:
        data["refunded"] = money(refunded)
    return data


def refund_json(refund) -> dict:
    return {
        "id": refund.id,
        "paymentId": refund.payment_id,
        "amount": money(refund.amount),
        "currency": refund.currency,
        "reason": refund.reason,
        "status": refund.status,
        "gatewayRefundId": refund.gateway_refund_id,
        "createdAt": isoformat(refund.created_at),
    }


def coupon_json(coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "description": coupon.description,
        "discountType": coupon.discount_type,
        "discountValue": money(coupon.discount_value),
        "currency": coupon.currency,
        "maxRedemptions": coupon.max_redemptions,
        "timesRedeemed": coupon.times_redeemed,
        "validFrom": isoformat(coupon.valid_from),
        "validUntil": isoformat(coupon.valid_until),
        "isActive": bool(coupon.is_active),
    }


def payment_log_json(log) -> dict:
    return {
        "id": log.id,
        "action": log.action,
        "status": log.status,
        "gateway": log.gateway,
        "siteId": log.site_id,
        "subscriptionId": log.subscription_id,
        "paymentId": log.payment_id,
        "orderId": log.order_id,
        "transactionId": log.transaction_id,
        "paymentReference": log.payment_reference,
        "amount": money(log.amount),
        "currency": log.currency,
        "errorMessage": log.error_message,
        "errorCode": log.error_code,
        "requestData": load_json(log.request_data),
        "responseData": load_json(log.response_data),
        "metadata": load_json(log.metadata_json),
        "durationMs": log.duration_ms,
        "ipAddress": log.ip_address,
        "createdAt": isoformat(log.created_at),
    }
