from rest_framework import permissions

from .models import UserProfile


def get_profile(user):
    if not user or not user.is_authenticated:
        return None
    try:
        return user.profile
    except UserProfile.DoesNotExist:
        return None


def get_role(user):
    profile = get_profile(user)
    return profile.role if profile else None


class IsAuthenticated(permissions.BasePermission):
    """
    Custom permission to only allow authenticated platform members.
    """
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and get_profile(request.user))


class RoleBasedPermission(permissions.BasePermission):
    allowed_roles = []
    message = 'You do not have permission to perform this action'

    def has_permission(self, request, view):
        role = get_role(request.user)
        return role in self.allowed_roles


class AdminPermission(RoleBasedPermission):
    allowed_roles = [UserProfile.ROLE_ADMIN]


class AdminOrManagerPermission(RoleBasedPermission):
    allowed_roles = [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER]


class RadiologistPermission(RoleBasedPermission):
    allowed_roles = [UserProfile.ROLE_RADIOLOGIST]


class StudyIntakePermission(RoleBasedPermission):
    allowed_roles = [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER, UserProfile.ROLE_TECHNICIAN]


class TemplateEditorPermission(RoleBasedPermission):
    allowed_roles = [UserProfile.ROLE_ADMIN, UserProfile.ROLE_MANAGER, UserProfile.ROLE_RADIOLOGIST]


class IsSuperUser(permissions.BasePermission):
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.is_superuser)


def can_access_study(user, study, listing=False):
    profile = get_profile(user)
    if not profile or study.organization_id != profile.organization_id:
        return False
    if profile.role == UserProfile.ROLE_RADIOLOGIST:
        if study.assigned_radiologist_id == user.id:
            return True
        return listing and study.status == study.STATUS_UNREAD and study.assigned_radiologist_id is None
    return True


def can_access_report(user, report):
    profile = get_profile(user)
    if not profile or report.study.organization_id != profile.organization_id:
        return False
    if profile.is_manager_or_admin:
        return True
    if profile.role == UserProfile.ROLE_RADIOLOGIST:
        return report.radiologist_id == user.id
    return report.is_finalized


def can_access_user(user, target):
    profile = get_profile(user)
    target_profile = get_profile(target)
    if not profile or not target_profile:
        return False
    if target.id == user.id:
        return True
    if target_profile.organization_id != profile.organization_id:
        return False
    if profile.role == UserProfile.ROLE_ADMIN:
        return True
    if profile.role == UserProfile.ROLE_MANAGER:
        return target_profile.role != UserProfile.ROLE_ADMIN
    return False
