"""Localization for subscription messages (English and French).

Message keys are the English strings themselves, so an untranslated key
renders as English. Placeholders use str.format syntax and are filled after
translation.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
import os
import logging

logger = logging.getLogger(__name__)

Translator = Callable[[str], str]

SUPPORTED_LANGUAGES = ("en", "fr")
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "fr": {
        # Billing errors
        "Subscription Error": "Erreur d'abonnement",
        "An error occurred while processing your subscription. Please try again later.":
            "Une erreur s'est produite lors du traitement de votre abonnement. Veuillez réessayer plus tard.",
        "Payment Failed": "Échec du paiement",
        "Your payment could not be processed. Please check your payment details and try again.":
            "Votre paiement n'a pas pu être traité. Veuillez vérifier vos informations de paiement et réessayer.",
        "Card Declined": "Carte refusée",
        "Your card was declined. Please use a different payment method or contact your bank.":
            "Votre carte a été refusée. Veuillez utiliser un autre moyen de paiement ou contacter votre banque.",
        "Already Subscribed": "Déjà abonné",
        "You already have an active subscription to this plan.":
            "Vous avez déjà un abonnement actif à ce forfait.",
        "Trial Ended": "Essai terminé",
        "Your free trial has ended. Please choose a subscription plan to continue.":
            "Votre essai gratuit est terminé. Veuillez choisir un forfait pour continuer.",
        "Subscription Not Found": "Abonnement introuvable",
        "We couldn't find your subscription. Please contact support if you believe this is an error.":
            "Nous n'avons pas trouvé votre abonnement. Veuillez contacter le support si vous pensez qu'il s'agit d'une erreur.",
        "Payment Processing Error": "Erreur de traitement du paiement",
        "There was an error processing your payment. Please try again or use a different payment method.":
            "Une erreur s'est produite lors du traitement de votre paiement. Veuillez réessayer ou utiliser un autre moyen de paiement.",
        "Invalid Plan": "Forfait invalide",
        "The selected subscription plan is not valid. Please choose a different plan.":
            "Le forfait sélectionné n'est pas valide. Veuillez choisir un autre forfait.",
        "Service Unavailable": "Service indisponible",
        "The subscription service is temporarily unavailable. Please try again later.":
            "Le service d'abonnement est temporairement indisponible. Veuillez réessayer plus tard.",

        # Lifecycle
        "Subscription Already Exists": "Abonnement existant",
        "You already have a subscription. Please use the dashboard to manage your subscription.":
            "Vous avez déjà un abonnement. Veuillez utiliser le tableau de bord pour gérer votre abonnement.",
        "You already have a subscription. You are currently in a trial period. "
        "Please wait until your trial ends or cancel it before starting a new subscription.":
            "Vous avez déjà un abonnement. Vous êtes actuellement en période d'essai. "
            "Veuillez attendre la fin de votre essai ou l'annuler avant de commencer un nouvel abonnement.",
        "You already have a subscription. Please reactivate your canceled subscription "
        "from the dashboard instead of creating a new one.":
            "Vous avez déjà un abonnement. Veuillez réactiver votre abonnement annulé "
            "depuis le tableau de bord au lieu d'en créer un nouveau.",
        "You already have a subscription. Please manage your existing subscription from the dashboard.":
            "Vous avez déjà un abonnement. Veuillez gérer votre abonnement existant depuis le tableau de bord.",
        "Request In Progress": "Demande en cours",
        "Your previous subscription request is still being processed. Please wait.":
            "Votre demande d'abonnement précédente est toujours en cours de traitement. Veuillez patienter.",
        "Free Trial Started": "Essai gratuit commencé",
        "Your {days}-day free trial of the {plan} has started.":
            "Votre essai gratuit de {days} jours du forfait {plan} a commencé.",
        "Subscription Created": "Abonnement créé",
        "Your subscription to the {plan} is now active.": "Votre abonnement au forfait {plan} est maintenant actif.",
        "Plan Updated": "Forfait mis à jour",
        "Your subscription has been changed to the {plan}.": "Votre abonnement a été changé pour le forfait {plan}.",
        "No Change": "Aucun changement",
        "You are already on the {plan}.": "Vous êtes déjà sur le forfait {plan}.",
        "Cannot Change Plan": "Impossible de changer de forfait",
        "You already have an active subscription. Please use the dashboard to manage your subscription.":
            "Vous avez déjà un abonnement actif. Veuillez utiliser le tableau de bord pour gérer votre abonnement.",
        "Plans can only be changed during your free trial. Please manage your subscription from the dashboard.":
            "Le forfait ne peut être changé que pendant votre essai gratuit. Veuillez gérer votre abonnement depuis le tableau de bord.",
        "No Subscription": "Aucun abonnement",
        "You don't have a subscription to change. Please choose a plan to get started.":
            "Vous n'avez pas d'abonnement à modifier. Veuillez choisir un forfait pour commencer.",
        "Subscription Canceled": "Abonnement annulé",
        "Your subscription has been canceled. You will have access until the end of your billing period.":
            "Votre abonnement a été annulé. Vous conserverez l'accès jusqu'à la fin de votre période de facturation.",
        "Nothing to Cancel": "Rien à annuler",
        "You don't have an active subscription to cancel.": "Vous n'avez pas d'abonnement actif à annuler.",
        "Cannot Cancel Subscription": "Impossible d'annuler l'abonnement",
        "Your subscription has an outstanding payment. Please manage your subscription from the dashboard.":
            "Votre abonnement a un paiement en attente. Veuillez gérer votre abonnement depuis le tableau de bord.",
        "Subscription Reactivated": "Abonnement réactivé",
        "Your {plan} subscription has been reactivated.": "Votre abonnement au forfait {plan} a été réactivé.",
        "You don't have a canceled subscription to reactivate. Please choose a plan to get started.":
            "Vous n'avez pas d'abonnement annulé à réactiver. Veuillez choisir un forfait pour commencer.",
        "Cannot Reactivate": "Réactivation impossible",
        "Only canceled subscriptions can be reactivated.": "Seuls les abonnements annulés peuvent être réactivés.",

        # Entitlements
        "Checking Subscription": "Vérification de l'abonnement",
        "We're confirming your subscription status. Please wait a moment.":
            "Nous vérifions l'état de votre abonnement. Veuillez patienter un instant.",
        "Authentication Required": "Authentification requise",
        "You must be logged in to access this page. Please sign in or create an account.":
            "Vous devez être connecté pour accéder à cette page. Veuillez vous connecter ou créer un compte.",
        "Subscription Required": "Abonnement requis",
        "This feature requires a subscription. Choose a plan to start your free trial.":
            "Cette fonctionnalité nécessite un abonnement. Choisissez un forfait pour commencer votre essai gratuit.",
        "Subscription Expired": "Abonnement expiré",
        "Your subscription has ended. Please choose a plan to restore access.":
            "Votre abonnement est terminé. Veuillez choisir un forfait pour rétablir l'accès.",
        "Payment Past Due": "Paiement en retard",
        "Your last payment failed. Please update your payment details from the dashboard to restore access.":
            "Votre dernier paiement a échoué. Veuillez mettre à jour vos informations de paiement depuis le tableau de bord pour rétablir l'accès.",
        "Upgrade Required": "Mise à niveau requise",
        "{feature} is not included in your current plan.": "{feature} n'est pas inclus dans votre forfait actuel.",
    },
}


def normalize_language(language: Optional[str]) -> str:
    if not language:
        return DEFAULT_LANGUAGE
    code = language.strip().lower().replace("_", "-").split("-", 1)[0]
    return code if code in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


def language_from_header(accept_language: Optional[str]) -> str:
    """Pick the highest-weighted supported language from an Accept-Language header.

    Ties keep header order; q=0 means "not acceptable".
    """
    if not accept_language:
        return DEFAULT_LANGUAGE
    ranked = []
    for part in accept_language.split(","):
        tag, *params = part.split(";")
        code = tag.strip().lower().split("-", 1)[0]
        weight = 1.0
        for param in params:
            name, _, value = param.strip().partition("=")
            if name.strip().lower() == "q":
                try:
                    weight = float(value)
                except ValueError:
                    weight = 0.0
        if code in SUPPORTED_LANGUAGES and weight > 0:
            ranked.append((weight, code))
    if not ranked:
        return DEFAULT_LANGUAGE
    # sorted is stable, so equal weights stay in header order
    return sorted(ranked, key=lambda item: item[0], reverse=True)[0][1]


def translate(key: str, language: Optional[str] = None) -> str:
    table = TRANSLATIONS.get(normalize_language(language))
    if not table:
        return key
    return table.get(key, key)


def get_translator(language: Optional[str] = None) -> Translator:
    lang = normalize_language(language)
    return lambda key: translate(key, lang)


@dataclass(frozen=True)
class UserMessage:
    """A title/description pair expressed as translation keys."""
    title: str
    description: str
    params: Tuple[Tuple[str, str], ...] = ()

    def with_params(self, **params: str) -> "UserMessage":
        return UserMessage(self.title, self.description, tuple(sorted(params.items())))

    def render(self, translate: Optional[Translator] = None) -> Dict[str, str]:
        translate = translate or (lambda key: key)
        title = translate(self.title)
        description = translate(self.description)
        if self.params:
            values = dict(self.params)
            try:
                title = title.format(**values)
                description = description.format(**values)
            except (KeyError, IndexError, ValueError) as e:
                logger.warning(f"Could not fill message placeholders: {e}")
        return {"title": title, "description": description}
