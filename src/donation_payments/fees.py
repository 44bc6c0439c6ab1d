from decimal import Decimal, ROUND_HALF_UP

from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.models.payment import FeeCalculation, FeeSchedule
from donation_payments.models.webhook import Processor

STRIPE_FEES = FeeSchedule(percentage=Decimal("0.029"), fixed_minor=30)
ADYEN_FEES = FeeSchedule(percentage=Decimal("0.025"), fixed_minor=25)
PAYPAL_FEES = FeeSchedule(percentage=Decimal("0.0299"), fixed_minor=49)

FEE_SCHEDULES: dict[Processor, FeeSchedule] = {
    Processor.STRIPE: STRIPE_FEES,
    Processor.ADYEN: ADYEN_FEES,
    Processor.PAYPAL: PAYPAL_FEES,
    Processor.MOCK: STRIPE_FEES,
}


class FeeCalculator:
    """Computes processor transaction fees in integer minor units."""

    @staticmethod
    def calculate(amount_minor: int, schedule: FeeSchedule, donor_covers_fee: bool = False) -> FeeCalculation:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            raise PaymentError(ErrorKind.INVALID_AMOUNT, "amount must be an integer number of minor units")
        if amount_minor <= 0:
            raise PaymentError(ErrorKind.INVALID_AMOUNT, "amount must be positive")

        percentage_component = int(
            (Decimal(amount_minor) * schedule.percentage).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        )
        fee = percentage_component + schedule.fixed_minor
        total = amount_minor + fee if donor_covers_fee else amount_minor

        return FeeCalculation(
            percentage=schedule.percentage,
            fixed_minor=schedule.fixed_minor,
            percentage_component_minor=percentage_component,
            fee_minor=fee,
            total_charge_minor=total,
            donor_covers_fee=donor_covers_fee,
        )

    @classmethod
    def for_processor(cls, processor: Processor | str, amount_minor: int, donor_covers_fee: bool = False) -> FeeCalculation:
        return cls.calculate(amount_minor, FEE_SCHEDULES[Processor.parse(processor)], donor_covers_fee)
