"""
Розподіл бонусів угоди по товарних позиціях

Бонусна сума перетворюється на знижки по рядках пропорційно до вільної
ємності кожного рядка (ліміт знижки у відсотках від вартості рядка, але не
більше самої вартості). Після розподілу знижка округлюється до цілих
грошових одиниць на одиницю товару, а різниця від округлення списується
на один рядок, щоб сума знижок точно дорівнювала бонусам.

Модуль не робить жодних запитів і не має стану між викликами.
"""
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
ONE = Decimal('1')

# Мінімальна сума, яку має сенс додавати до рядка за один раунд
MIN_INCREMENT = Decimal('0.01')
# Знижка на одиницю товару записується в CRM цілими одиницями валюти
DISCOUNT_UNIT = Decimal('1')
DEFAULT_CAP_PERCENT = Decimal('0.15')


class AllocationError(Exception):
    """Базова помилка розподілу бонусів"""


class InvalidBonusAmount(AllocationError):
    """Сума бонусів нульова або від'ємна"""


class NoEligibleItems(AllocationError):
    """Жоден рядок не може прийняти знижку"""


class ResidualMismatch(AllocationError):
    """Після корекції сума знижок все ще не дорівнює бонусам"""

    def __init__(self, residual: Decimal, message: Optional[str] = None):
        self.residual = residual
        super().__init__(message or f'Залишок після корекції: {residual}')


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """
    Перетворення числа з CRM (int, float, str) на Decimal
    """
    if value is None or value == '':
        return default
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value).strip())
    except ArithmeticError:
        return default
    return result if result.is_finite() else default


def round_half_away(value: Decimal) -> Decimal:
    """Округлення до цілої одиниці, половина - від нуля"""
    return value.quantize(DISCOUNT_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    """Товарна позиція угоди на вході розподілу"""
    product_id: str
    unit_price: Decimal
    quantity: Decimal
    existing_discount_per_unit: Decimal = ZERO
    eligible: bool = True
    cap_percent: Decimal = DEFAULT_CAP_PERCENT
    name: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'product_id', str(self.product_id))
        object.__setattr__(self, 'unit_price', to_decimal(self.unit_price))
        object.__setattr__(self, 'quantity', to_decimal(self.quantity))
        object.__setattr__(self, 'existing_discount_per_unit', to_decimal(self.existing_discount_per_unit))
        object.__setattr__(self, 'cap_percent', to_decimal(self.cap_percent, DEFAULT_CAP_PERCENT))

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def existing_discount_total(self) -> Decimal:
        return self.existing_discount_per_unit * self.quantity

    @property
    def price_floor_limit(self) -> Decimal:
        """Найбільша ціла знижка на одиницю, що не робить ціну від'ємною"""
        if self.unit_price <= 0:
            return ZERO
        return self.unit_price.quantize(DISCOUNT_UNIT, rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class AllocationState:
    """Робочий стан рядка в межах одного виклику allocate"""
    index: int
    applied_discount: Decimal
    max_discount_abs: Decimal
    max_possible_discount_abs: Decimal

    @property
    def ceiling(self) -> Decimal:
        return min(self.max_discount_abs, self.max_possible_discount_abs)

    @property
    def remaining_capacity(self) -> Decimal:
        return max(self.ceiling - self.applied_discount, ZERO)


@dataclass(frozen=True)
class AllocationResult:
    """Рядок після розподілу, готовий до запису в CRM"""
    product_id: str
    name: str
    original_unit_price: Decimal
    unit_price: Decimal
    quantity: Decimal
    discount_per_unit: Decimal
    participated: bool
    applied_discount: Decimal = ZERO

    @property
    def discount_total(self) -> Decimal:
        return self.discount_per_unit * self.quantity


@dataclass
class AllocationReport:
    """Результат розподілу разом з діагностикою"""
    lines: List[AllocationResult]
    total_bonus: Decimal
    target_total: Decimal
    distributed: Decimal
    shortfall: Decimal
    residual: Decimal
    rounds: int
    designated_product_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def discount_sum(self) -> Decimal:
        return sum((line.discount_total for line in self.lines), ZERO)

    @property
    def is_exact(self) -> bool:
        return self.residual == 0

    def raise_for_residual(self):
        if self.residual != 0:
            raise ResidualMismatch(self.residual)


def _start_of(line: LineItem, carry_forward: bool) -> Decimal:
    return max(line.existing_discount_total, ZERO) if carry_forward else ZERO


def _initial_states(lines: Sequence[LineItem], carry_forward: bool) -> List[AllocationState]:
    states = []
    for index, line in enumerate(lines):
        if not line.eligible or line.quantity <= 0 or line.unit_price <= 0:
            continue
        total_price = line.total_price
        states.append(AllocationState(
            index=index,
            applied_discount=_start_of(line, carry_forward),
            max_discount_abs=total_price * max(line.cap_percent, ZERO),
            max_possible_discount_abs=total_price,
        ))
    return [state for state in states if state.remaining_capacity > 0]


def _fill_round(states: Tuple[AllocationState, ...],
                remaining_budget: Decimal) -> Tuple[Tuple[AllocationState, ...], Decimal]:
    """
    Один раунд пропорційного розподілу

    Частки рахуються від зафіксованого на початку раунду знімка ємностей,
    тому порядок рядків не впливає на результат раунду.
    """
    snapshot = [state.remaining_capacity for state in states]
    total_capacity = sum(snapshot, ZERO)
    if total_capacity <= 0:
        return states, ZERO

    amount = min(remaining_budget, total_capacity)
    deltas = []
    for capacity in snapshot:
        delta = min(amount * capacity / total_capacity, capacity)
        deltas.append(delta if delta >= MIN_INCREMENT else ZERO)

    updated = tuple(
        replace(state, applied_discount=min(state.applied_discount + delta, state.ceiling)) if delta else state
        for state, delta in zip(states, deltas)
    )
    return updated, sum(deltas, ZERO)


def _distribute(states: List[AllocationState],
                budget: Decimal) -> Tuple[List[AllocationState], Decimal, int]:
    """
    Ітеративний розподіл бюджету, поки є бюджет і рядки з вільною ємністю

    Повертає оновлені стани, нерозподілений залишок і кількість раундів.
    """
    by_index = {state.index: state for state in states}
    working = tuple(states)
    remaining_budget = budget
    rounds = 0

    while remaining_budget > 0 and working:
        working, distributed = _fill_round(working, remaining_budget)
        rounds += 1
        remaining_budget = max(remaining_budget - distributed, ZERO)
        for state in working:
            by_index[state.index] = state
        working = tuple(state for state in working if state.remaining_capacity > 0)

        # Захист від зациклення: ємність лишилась лише в мізерних сумах
        if distributed < MIN_INCREMENT:
            break

    return [by_index[state.index] for state in states], remaining_budget, rounds


def _with_discount(result: AllocationResult, line: LineItem, discount_per_unit: Decimal) -> AllocationResult:
    discount_per_unit = min(max(discount_per_unit, ZERO), line.price_floor_limit)
    return replace(
        result,
        discount_per_unit=discount_per_unit,
        unit_price=line.unit_price - discount_per_unit,
    )


def _sum_discounts(results: Sequence[AllocationResult]) -> Decimal:
    return sum((result.discount_total for result in results), ZERO)


def _reconcile(results: List[AllocationResult], line: LineItem, index: int,
               target: Decimal) -> List[AllocationResult]:
    """
    Корекція округлення на одному рядку, щоб сума знижок дорівнювала target
    """
    diff = target - _sum_discounts(results)
    if diff == 0:
        return results

    designated = results[index]
    step = round_half_away(diff / line.quantity)
    if step:
        results[index] = designated = _with_discount(designated, line, designated.discount_per_unit + step)
        logger.info(f"Корекція округлення: {line.product_id} {step:+} за одиницю (різниця {diff})")

    diff = target - _sum_discounts(results)
    if diff != 0:
        nudged = _with_discount(designated, line, designated.discount_per_unit + ONE.copy_sign(diff))
        candidate = results[:index] + [nudged] + results[index + 1:]
        if abs(target - _sum_discounts(candidate)) < abs(diff):
            results = candidate
    return results


def allocate(total_bonus: Any, lines: Sequence[LineItem],
             carry_forward_existing_discount: bool = True) -> AllocationReport:
    """
    Розподіл суми бонусів по товарних позиціях

    Args:
        total_bonus: Сума бонусів до списання
        lines: Товарні позиції угоди (порядок визначає рядок для корекції)
        carry_forward_existing_discount: Зберігати наявні знижки рядків.
            Якщо True - знижки, що вже є, залишаються, а бонуси додаються
            зверху; цільова сума = бонуси + наявні знижки. Якщо False - всі
            знижки рахуються заново, а рядки без участі обнуляються.

    Raises:
        InvalidBonusAmount: бонуси <= 0
        NoEligibleItems: жоден рядок не має вільної ємності
    """
    bonus = to_decimal(total_bonus)
    if bonus <= 0:
        raise InvalidBonusAmount(f'Сума бонусів некоректна: {total_bonus}')

    lines = list(lines)
    states = _initial_states(lines, carry_forward_existing_discount)
    if not states:
        raise NoEligibleItems('Немає товарів для застосування бонусів')

    states, leftover, rounds = _distribute(states, bonus)
    participating = {state.index: state for state in states}

    results = []
    for index, line in enumerate(lines):
        state = participating.get(index)
        if state is not None:
            discount = round_half_away(state.applied_discount / line.quantity)
            applied = state.applied_discount
        else:
            discount = line.existing_discount_per_unit if carry_forward_existing_discount else ZERO
            applied = ZERO
        result = AllocationResult(
            product_id=line.product_id,
            name=line.name,
            original_unit_price=line.unit_price,
            unit_price=line.unit_price - discount,
            quantity=line.quantity,
            discount_per_unit=discount,
            participated=state is not None,
            applied_discount=applied,
        )
        if state is not None:
            result = _with_discount(result, line, discount)
        results.append(result)

    carried = sum((line.existing_discount_total for line in lines), ZERO) if carry_forward_existing_discount else ZERO
    target = bonus + carried
    warnings = []

    free_capacity = sum((state.remaining_capacity for state in states), ZERO)
    shortfall = max(leftover - free_capacity, ZERO)
    # Менше однієї одиниці валюти покривається корекцією округлення
    if shortfall.quantize(DISCOUNT_UNIT, rounding=ROUND_FLOOR) == 0:
        shortfall = ZERO
    reconcile_target = target
    if shortfall > 0:
        reconcile_target = (target - shortfall).quantize(DISCOUNT_UNIT, rounding=ROUND_FLOOR)
        warnings.append(f'Бонуси перевищують доступну знижку, не розподілено: {shortfall}')
        logger.warning(f"⚠️ Не вистачає ємності для бонусів: не розподілено {shortfall}")

    received = [
        state for state in states
        if state.applied_discount > _start_of(lines[state.index], carry_forward_existing_discount)
    ]
    designated = (received or states)[-1]
    results = _reconcile(results, lines[designated.index], designated.index, reconcile_target)

    residual = reconcile_target - _sum_discounts(results)
    if residual != 0:
        warnings.append(f'Не вдалося точно зрівняти суму знижок, залишок: {residual}')
        logger.warning(f"⚠️ Залишок після корекції: {residual} (рядок {lines[designated.index].product_id})")

    report = AllocationReport(
        lines=results,
        total_bonus=bonus,
        target_total=target,
        distributed=bonus - leftover,
        shortfall=shortfall,
        residual=residual,
        rounds=rounds,
        designated_product_id=lines[designated.index].product_id,
        warnings=warnings,
    )
    logger.info(f"✅ Розподілено {report.distributed} з {bonus} бонусів за {rounds} раунд(ів), "
                f"сума знижок {report.discount_sum}")
    return report


def format_allocation_note(report: AllocationReport) -> List[str]:
    """
    Рядки примітки для поля угоди: "<id> <назва> - <знижка за одиницю>"
    """
    return [
        f"{line.product_id} {line.name} - {_format_amount(line.discount_per_unit)}"
        for line in report.lines
    ]


def _format_amount(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(value.quantize(DISCOUNT_UNIT))
    return str(value.normalize())
