from dataclasses import dataclass, field
from decimal import Decimal

from .money import HUNDRED, ZERO, percent_change, safe_ratio, signed_percent_change, to_decimal
from .revenue import RevenueGroup, sum_amounts

REVENUE_LINES = {"treatment": "treatments", "consultation": "consultations"}
EXPENSE_LINES = {
    "salary": "salaries",
    "rent": "rent",
    "supplies": "supplies",
    "utilities": "utilities",
    "marketing": "marketing",
}


@dataclass(frozen=True)
class CommissionLine:
    professional_id: int
    name: str
    amount: Decimal


@dataclass
class PeriodComparison:
    previous_gross_income: Decimal
    previous_expenses: Decimal
    previous_net_profit: Decimal
    income_change: Decimal
    expense_change: Decimal
    profit_change: Decimal


@dataclass
class NetProfitSummary:
    gross_income: Decimal
    total_expenses: Decimal
    total_commissions: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    comparison: PeriodComparison
    income_by_category: list[RevenueGroup] = field(default_factory=list)
    expenses_by_category: list[RevenueGroup] = field(default_factory=list)
    commissions_by_professional: list[CommissionLine] = field(default_factory=list)


def profit_margin(net_profit, gross_income) -> Decimal:
    return safe_ratio(net_profit, gross_income) * HUNDRED


def build_net_profit_summary(
    income: list[RevenueGroup],
    expenses: list[RevenueGroup],
    commissions: list[CommissionLine],
    previous_income: list[RevenueGroup],
    previous_expenses: list[RevenueGroup],
) -> NetProfitSummary:
    gross_income = sum_amounts(income)
    total_expenses = sum_amounts(expenses)
    total_commissions = sum_amounts(commissions)
    net_profit = gross_income - total_expenses - total_commissions

    prev_income = sum_amounts(previous_income)
    prev_expenses = sum_amounts(previous_expenses)
    # Commissions are not recomputed for the previous window.
    prev_net = prev_income - prev_expenses

    return NetProfitSummary(
        gross_income=gross_income,
        total_expenses=total_expenses,
        total_commissions=total_commissions,
        net_profit=net_profit,
        profit_margin=profit_margin(net_profit, gross_income),
        comparison=PeriodComparison(
            previous_gross_income=prev_income,
            previous_expenses=prev_expenses,
            previous_net_profit=prev_net,
            income_change=percent_change(gross_income, prev_income),
            expense_change=percent_change(total_expenses, prev_expenses),
            profit_change=signed_percent_change(net_profit, prev_net),
        ),
        income_by_category=list(income),
        expenses_by_category=list(expenses),
        commissions_by_professional=list(commissions),
    )


@dataclass
class RevenueLines:
    treatments: Decimal = ZERO
    consultations: Decimal = ZERO
    other: Decimal = ZERO
    total: Decimal = ZERO


@dataclass
class ExpenseLines:
    salaries: Decimal = ZERO
    rent: Decimal = ZERO
    supplies: Decimal = ZERO
    utilities: Decimal = ZERO
    marketing: Decimal = ZERO
    commissions: Decimal = ZERO
    other: Decimal = ZERO
    total: Decimal = ZERO


@dataclass
class ProfitLossStatement:
    revenue: RevenueLines
    expenses: ExpenseLines
    gross_profit: Decimal
    net_profit: Decimal
    profit_margin: Decimal


def build_profit_and_loss(
    income: list[RevenueGroup],
    expenses: list[RevenueGroup],
    total_commissions,
) -> ProfitLossStatement:
    revenue = RevenueLines()
    for group in income:
        line = REVENUE_LINES.get(group.key, "other")
        amount = to_decimal(group.amount)
        setattr(revenue, line, getattr(revenue, line) + amount)
        revenue.total += amount

    commissions = to_decimal(total_commissions)
    expense_lines = ExpenseLines(commissions=commissions, total=commissions)
    for group in expenses:
        line = EXPENSE_LINES.get(group.key, "other")
        amount = to_decimal(group.amount)
        setattr(expense_lines, line, getattr(expense_lines, line) + amount)
        expense_lines.total += amount

    gross_profit = revenue.total
    net_profit = gross_profit - expense_lines.total
    return ProfitLossStatement(
        revenue=revenue,
        expenses=expense_lines,
        gross_profit=gross_profit,
        net_profit=net_profit,
        profit_margin=profit_margin(net_profit, revenue.total),
    )
