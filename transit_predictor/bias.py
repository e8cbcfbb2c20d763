"""
Bias adjusters applied to raw predicted durations

Longer predictions tend to be optimistic or pessimistic in a systematic
way; an adjuster scales the predicted duration (msec from the AVL time to
the predicted time) before it is published.
"""

import math

from transit_predictor.config import BiasAdjusterType, BiasSettings


class BiasAdjuster:
    """No adjustment"""

    def adjust_prediction(self, prediction: int) -> int:
        return prediction


class NoBiasAdjuster(BiasAdjuster):
    pass


class LinearBiasAdjuster(BiasAdjuster):
    """Adjusts by a percentage that grows linearly with the prediction length"""

    def __init__(self, rate: float, updown: int = -1):
        self.rate = rate
        self.updown = updown

    def percentage(self, prediction: int) -> float:
        return (prediction // 100) * self.rate

    def adjust_prediction(self, prediction: int) -> int:
        percentage = self.percentage(prediction)
        return int(prediction + (((percentage / 100) * prediction) * self.updown))


class ExponentialBiasAdjuster(BiasAdjuster):
    """
    Adjusts by percentage = b ** minutes * a - c

    minutes is the whole number of minutes in the prediction.
    """

    def __init__(self, a: float, b: float, c: float, updown: int = -1):
        self.a = a
        self.b = b
        self.c = c
        self.updown = updown

    def percentage(self, prediction: int) -> float:
        to_the_power = float((prediction // 1000) // 60)
        return (math.pow(self.b, to_the_power) * self.a) - self.c

    def adjust_prediction(self, prediction: int) -> int:
        percentage = self.percentage(prediction)
        return int(prediction + (self.updown * ((percentage / 100) * prediction)))


_ADJUSTERS = {
    BiasAdjusterType.NONE: lambda settings: NoBiasAdjuster(),
    BiasAdjusterType.LINEAR: lambda settings: LinearBiasAdjuster(
        settings.linear_rate, settings.linear_updown
    ),
    BiasAdjusterType.EXPONENTIAL: lambda settings: ExponentialBiasAdjuster(
        settings.exponential_a,
        settings.exponential_b,
        settings.exponential_c,
        settings.exponential_updown,
    ),
}


def create_bias_adjuster(settings: BiasSettings) -> BiasAdjuster:
    return _ADJUSTERS[settings.adjuster](settings)
