"""Validator pattern tables, tracked framework symbols, and prompt policy rules."""

import re

# Patterns that must never appear in a generated file. Each entry:
# (pattern_regex, category, severity, message, suggestion)
# severity "policy" is fatal to the file and never retried; "error" is fed back
# to the Builder as healing context.
FORBIDDEN_PATTERNS = [
    # --- Disallowed UI libraries ---
    (
        re.compile(r"""from\s+["'](?:@mui/[\w/-]*|@material-ui/[\w/-]*|@chakra-ui/[\w/-]*|antd|react-bootstrap|semantic-ui-react)["']"""),
        "ForbiddenImport",
        "error",
        "Imports a UI library that is not available in the preview runtime",
        "Use plain JSX with Tailwind classes and lucide-react icons instead",
    ),
    (
        re.compile(r"""from\s+["']react-router(?:-dom)?["']"""),
        "ForbiddenImport",
        "error",
        "Uses react-router; navigation must be local component state",
        "Replace routes and <Link> with a useState-driven activeTab",
    ),

    # --- Payment SDKs (policy) ---
    (
        re.compile(r"""from\s+["'](?:@stripe/[\w/-]*|stripe|@paypal/[\w/-]*|braintree[\w-]*)["']"""),
        "Policy",
        "policy",
        "Direct payment SDK import; checkout is provided by the platform",
        "Remove the payment SDK and call the platform checkout hook from buy buttons",
    ),
    (
        re.compile(r"""\b(?:Stripe|loadStripe|paypal\.Buttons)\s*\("""),
        "Policy",
        "policy",
        "Direct payment SDK call; checkout is provided by the platform",
        "Remove the payment call and call the platform checkout hook from buy buttons",
    ),

    # --- Embedded auth forms (policy) ---
    (
        re.compile(r"""type\s*=\s*[{]?\s*["']password["']""", re.IGNORECASE),
        "Policy",
        "policy",
        "Embedded password field; authentication is handled by the platform",
        "Remove the login/signup form entirely",
    ),
    (
        re.compile(r"""<form[^>]*\b(?:login|signin|sign-in|signup|sign-up|register)\b""", re.IGNORECASE),
        "Policy",
        "policy",
        "Embedded auth form; authentication is handled by the platform",
        "Remove the login/signup form entirely",
    ),

    # --- Direct HTTP clients ---
    (
        re.compile(r"""from\s+["']axios["']|\baxios\s*\.\s*(?:get|post|put|delete|create)\s*\("""),
        "ForbiddenPattern",
        "error",
        "Uses axios; generated storefront code must not perform network requests",
        "Use static mock data defined in the file instead of network calls",
    ),
    (
        re.compile(r"""(?<![\w.])fetch\s*\(|\bXMLHttpRequest\b"""),
        "ForbiddenPattern",
        "error",
        "Performs a direct HTTP request; generated code must stay offline",
        "Use static mock data defined in the file instead of network calls",
    ),

    # --- Local image paths ---
    (
        re.compile(r"""(?:src|href)\s*=\s*[{]?\s*["'](?:\./|\.\./|/?assets/|/images/|/img/)"""),
        "LocalImage",
        "error",
        "References a local image path that does not exist in the preview",
        "Use an absolute https:// image URL (for example an Unsplash photo)",
    ),
    (
        re.compile(r"""import\s+\w+\s+from\s+["']\.{1,2}/[^"']+\.(?:png|jpe?g|gif|svg|webp)["']""", re.IGNORECASE),
        "LocalImage",
        "error",
        "Imports a local image file that does not exist in the preview",
        "Use an absolute https:// image URL (for example an Unsplash photo)",
    ),
]

# Framework symbols whose use without an import is a silent runtime crash.
# symbol -> module it must be imported from
TRACKED_SYMBOLS = {
    "useState": "react",
    "useEffect": "react",
    "useMemo": "react",
    "useCallback": "react",
    "useRef": "react",
    "useReducer": "react",
    "useContext": "react",
    "useLayoutEffect": "react",
    "motion": "framer-motion",
    "AnimatePresence": "framer-motion",
    "useAnimation": "framer-motion",
    "useInView": "framer-motion",
    "useScroll": "framer-motion",
    "useTransform": "framer-motion",
}

# Files that must carry exactly one `export default`
EXPORT_REQUIRED_EXTENSIONS = (".tsx", ".jsx")

# Only these extensions are checked at all
CODE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")

# Manifest paths may not land in platform-owned folders
RESTRICTED_PREFIXES = (
    "/core/", "/checkout/", "/auth/", "/payments/",
    "/settings/", "/admin/", "/api/",
)

# Prompt-level policy. Each keyword is matched as a whitespace-tolerant,
# word-bounded phrase.
POLICY_RULES = [
    {
        "id": "auth_restriction",
        "category": "Security Policy",
        "keywords": [
            "login page", "sign in page", "signin page", "signup page", "sign up page",
            "register page", "registration page", "password reset", "forgot password",
            "two factor", "otp page", "authentication page", "login form", "signup form",
            "register form", "login modal", "signup modal", "auth system",
        ],
        "message": "Authentication is managed by the platform. Login, signup and password "
                   "pages can't be generated; try a storefront, product showcase or landing page.",
    },
    {
        "id": "settings_restriction",
        "category": "Platform Scope",
        "keywords": [
            "settings page", "user settings", "account settings", "profile settings",
            "billing page", "payment settings", "subscription settings", "account management",
            "notification settings", "privacy settings", "delete account",
        ],
        "message": "Account settings and billing are handled by the platform. "
                   "Try a product gallery, hero section or about page instead.",
    },
    {
        "id": "backend_restriction",
        "category": "Architecture Limit",
        "keywords": [
            "create database", "database schema", "sql query", "backend api",
            "server setup", "admin panel", "admin dashboard", "api endpoint",
            "rest api", "graphql", "webhook handler", "backend logic", "database table",
        ],
        "message": "Only frontend storefront code is generated; backend infrastructure is "
                   "provided by the platform.",
    },
    {
        "id": "payment_restriction",
        "category": "Payment Policy",
        "keywords": [
            "stripe key", "stripe api", "paypal client", "paypal api", "custom checkout",
            "payment gateway", "payment processor", "credit card form", "payment form",
            "integrate stripe", "integrate paypal", "crypto payment", "bitcoin payment",
        ],
        "message": "Payments go through the platform checkout. Custom payment integrations "
                   "aren't permitted; buy buttons use the platform checkout automatically.",
    },
]

# Markers embedded in stage raw text
BEGIN_MARKER = "/// BEGIN_CODE ///"
END_MARKER = "/// END_CODE ///"
COMPLETE_SENTINEL = "// --- GENERATION_COMPLETE ---"
